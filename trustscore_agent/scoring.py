from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Iterable, Mapping

import structlog

from .errors import AllSignalsFailed, ConfigurationError
from .models import (
    SIGNAL_ORDER,
    CompositeResult,
    RiskFactor,
    RiskTier,
    Signal,
    SignalFailure,
    SignalSuccess,
)
from .signals import SignalOutcome

logger = structlog.get_logger(__name__)

DEFAULT_WEIGHTS: dict[Signal, float] = {
    Signal.REPUTATION: 0.40,
    Signal.REGISTRATION: 0.25,
    Signal.CERTIFICATE: 0.20,
    Signal.AI_CONTENT: 0.15,
}

_WEIGHT_TOLERANCE = 0.01

# Lower bound (inclusive) of each tier, best first.
TIER_FLOORS: tuple[tuple[float, RiskTier], ...] = (
    (80.0, RiskTier.SAFE),
    (60.0, RiskTier.MODERATE),
    (40.0, RiskTier.CAUTION),
    (20.0, RiskTier.HIGH_RISK),
    (0.0, RiskTier.DANGER),
)

NEUTRAL_SCORE = 50.0


def risk_tier(score: float) -> RiskTier:
    for floor, tier in TIER_FLOORS:
        if score >= floor:
            return tier
    return RiskTier.DANGER


def contribution(weight: float, danger_score: float) -> float:
    """Safety contribution of one signal: danger is inverted so higher means safer."""
    return weight * (100.0 - danger_score)


class ScoringEngine:
    """Weighted combination of per-signal danger scores into one safety score.

    Failed signals contribute nothing; their weight is handed to the succeeding
    signals in proportion to each one's fixed weight, so the attainable maximum
    stays 100. A confirmed threat from a veto signal (reputation by default)
    caps the result in the HighRisk band whatever the other signals say.
    """

    def __init__(
        self,
        weights: Mapping[Signal, float] | None = None,
        *,
        veto_signals: Iterable[Signal] = (Signal.REPUTATION,),
        veto_danger: float = 90.0,
        veto_ceiling: float = 39.0,
    ):
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        self.veto_signals = frozenset(veto_signals)
        self.veto_danger = veto_danger
        self.veto_ceiling = veto_ceiling
        self._validate()

    def _validate(self) -> None:
        missing = [s.value for s in SIGNAL_ORDER if s not in self.weights]
        if missing:
            raise ConfigurationError(f"missing weights for: {', '.join(missing)}")
        for signal, weight in self.weights.items():
            if not 0.0 <= weight <= 1.0:
                raise ConfigurationError(f"weight for {signal.value} must be within [0, 1], got {weight}")
        total = sum(self.weights.values())
        if abs(total - 1.0) > _WEIGHT_TOLERANCE:
            raise ConfigurationError(f"weights must sum to 1.0, got {total:.3f}")

    def effective_weights(self, results: Mapping[Signal, SignalOutcome]) -> dict[Signal, float]:
        succeeded = [s for s in SIGNAL_ORDER if isinstance(results.get(s), SignalSuccess)]
        available = sum(self.weights[s] for s in succeeded)
        if available <= 0:
            return {s: 0.0 for s in SIGNAL_ORDER}
        missing = sum(self.weights[s] for s in SIGNAL_ORDER if s not in succeeded)
        out: dict[Signal, float] = {}
        for signal in SIGNAL_ORDER:
            if signal in succeeded:
                base = self.weights[signal]
                out[signal] = base + (base / available) * missing
            else:
                out[signal] = 0.0
        return out

    def aggregate_confidence(self, results: Mapping[Signal, SignalOutcome]) -> float:
        # Full configured weights: each missing signal lowers confidence.
        total = sum(self.weights.values())
        acc = sum(
            self.weights[s] * r.confidence
            for s, r in results.items()
            if isinstance(r, SignalSuccess)
        )
        return max(0.0, min(1.0, acc / total)) if total else 0.0

    def score(
        self,
        subject: str,
        results: Mapping[Signal, SignalOutcome],
        *,
        completed_at: datetime | None = None,
    ) -> CompositeResult:
        self._check_complete(results)
        failures = {s: r for s, r in results.items() if isinstance(r, SignalFailure)}
        if len(failures) == len(SIGNAL_ORDER):
            raise AllSignalsFailed(subject, failures)

        weights = self.effective_weights(results)
        contributions: dict[Signal, float] = {}
        for signal in SIGNAL_ORDER:
            result = results[signal]
            if isinstance(result, SignalSuccess):
                contributions[signal] = contribution(weights[signal], result.danger_score)
            else:
                contributions[signal] = 0.0

        raw = math.fsum(contributions.values())
        overall = max(0.0, min(100.0, raw))

        capped = False
        for signal in self.veto_signals:
            result = results.get(signal)
            if isinstance(result, SignalSuccess) and result.danger_score >= self.veto_danger:
                if overall > self.veto_ceiling:
                    overall = self.veto_ceiling
                    capped = True

        overall = round(overall, 2)
        composite = CompositeResult(
            subject=subject,
            signals=dict(results),
            overall_safety_score=overall,
            risk_tier=risk_tier(overall),
            aggregate_confidence=round(self.aggregate_confidence(results), 3),
            degraded=bool(failures),
            failed_signals=frozenset(failures),
            completed_at=completed_at or datetime.now(timezone.utc),
            effective_weights=weights,
            contributions=contributions,
            risk_factors=tuple(self._retained_factors(results)),
            score_capped=capped,
        )
        logger.debug(
            "score_calculated",
            subject=subject,
            score=composite.overall_safety_score,
            tier=composite.risk_tier.value,
            confidence=composite.aggregate_confidence,
            failed=sorted(s.value for s in failures),
            capped=capped,
        )
        return composite

    def neutral_result(
        self,
        subject: str,
        results: Mapping[Signal, SignalOutcome],
        *,
        completed_at: datetime | None = None,
    ) -> CompositeResult:
        """Fallback when no signal succeeded: a mid-scale score nobody should trust."""
        self._check_complete(results)
        return CompositeResult(
            subject=subject,
            signals=dict(results),
            overall_safety_score=NEUTRAL_SCORE,
            risk_tier=risk_tier(NEUTRAL_SCORE),
            aggregate_confidence=0.0,
            degraded=True,
            failed_signals=frozenset(s for s, r in results.items() if isinstance(r, SignalFailure)),
            completed_at=completed_at or datetime.now(timezone.utc),
            effective_weights={s: 0.0 for s in SIGNAL_ORDER},
            contributions={s: 0.0 for s in SIGNAL_ORDER},
        )

    @staticmethod
    def _check_complete(results: Mapping[Signal, SignalOutcome]) -> None:
        missing = [s.value for s in SIGNAL_ORDER if s not in results]
        if missing:
            raise ValueError(f"no result for signal(s): {', '.join(missing)}")

    @staticmethod
    def _retained_factors(results: Mapping[Signal, SignalOutcome]) -> list[RiskFactor]:
        factors: list[RiskFactor] = []
        for signal in SIGNAL_ORDER:
            result = results[signal]
            if not isinstance(result, SignalSuccess):
                continue
            for factor in result.risk_factors:
                factors.append(factor if factor.signal is not None else factor.model_copy(update={"signal": signal}))
        return factors
