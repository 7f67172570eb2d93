"""
Pytest configuration and shared fixtures.

Adapters here are plain callables so orchestration tests never touch the network.
"""
from __future__ import annotations

import threading

import pytest

from trustscore_agent.cache import build_namespaces
from trustscore_agent.config import AnalysisConfig
from trustscore_agent.models import RiskFactor, Signal, SignalSuccess
from trustscore_agent.orchestrator import AnalysisOrchestrator


class FakeClock:
    """Manually advanced monotonic clock for cache tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubAdapter:
    """Returns a fixed outcome (or raises a fixed error) and counts calls."""

    def __init__(self, outcome=None, error: Exception | None = None):
        self.outcome = outcome
        self.error = error
        self.calls: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    def analyze(self, subject: str, timeout: float):
        with self._lock:
            self.calls.append((subject, timeout))
        if self.error is not None:
            raise self.error
        return self.outcome


class BlockingAdapter(StubAdapter):
    """Blocks until released; stands in for an upstream that never answers in time."""

    def __init__(self, outcome=None):
        super().__init__(outcome)
        self.release = threading.Event()
        self.finished = threading.Event()

    def analyze(self, subject: str, timeout: float):
        super().analyze(subject, timeout)
        self.release.wait(5)
        self.finished.set()
        return self.outcome


def clean(danger: float = 0.0, confidence: float = 0.9, description: str = "clean") -> SignalSuccess:
    return SignalSuccess(
        danger_score=danger,
        confidence=confidence,
        risk_factors=(RiskFactor(type="positive", code="clean", description=description),),
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clean_adapters() -> dict[Signal, StubAdapter]:
    return {
        Signal.REPUTATION: StubAdapter(clean(0.0, 0.95)),
        Signal.REGISTRATION: StubAdapter(clean(5.0, 0.8)),
        Signal.CERTIFICATE: StubAdapter(clean(10.0, 0.9)),
        Signal.AI_CONTENT: StubAdapter(clean(20.0, 0.7)),
    }


@pytest.fixture
def make_orchestrator():
    """Factory that builds orchestrators and closes them after the test."""
    created: list[AnalysisOrchestrator] = []
    blockers: list[BlockingAdapter] = []

    def _make(adapters, config: AnalysisConfig | None = None, **kwargs) -> AnalysisOrchestrator:
        config = config or AnalysisConfig()
        blockers.extend(a for a in adapters.values() if isinstance(a, BlockingAdapter))
        orchestrator = AnalysisOrchestrator(
            adapters,
            caches=kwargs.pop("caches", None) or build_namespaces(config),
            config=config,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for blocker in blockers:
        blocker.release.set()
    for orchestrator in created:
        orchestrator.close()
