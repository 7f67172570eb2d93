"""
Fan-out of one analysis request to the four signal adapters.

Cached successes short-circuit their signal. Everything else is submitted to a
shared thread pool at once and awaited against per-signal timeouts bounded by
one overall deadline. Whatever has not answered by then is recorded as a
timeout failure; the scoring engine then combines what is there.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, CancelledError, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

import structlog

from .cache import CacheNamespace, build_namespaces
from .config import AnalysisConfig
from .errors import AllSignalsFailed, CacheCapacityRejected, ConfigurationError, SignalError, WarmingInProgress
from .models import (
    SIGNAL_ORDER,
    AnalysisRequest,
    CacheKey,
    CompositeResult,
    FailureKind,
    Signal,
    SignalFailure,
    SignalSuccess,
)
from .scoring import ScoringEngine
from .signals import AdapterLike, SignalOutcome

logger = structlog.get_logger(__name__)

_RECENT = 10


class OrchestrationState(str, Enum):
    RECEIVED = "received"
    DISPATCHING = "dispatching"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class AnalysisRecord:
    subject: str
    started_at: str
    duration_ms: int
    state: str
    # signal name -> "live", "cache" or the failure kind
    signals: dict[str, str] = field(default_factory=dict)
    score: float | None = None
    tier: str | None = None


@dataclass
class WarmingReport:
    subjects: int = 0
    # Counted per (subject, signal) pair.
    warmed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class AnalysisOrchestrator:
    """Runs the signals for one subject and scores the outcome.

    The orchestrator owns its thread pool unless one is passed in; call
    ``close()`` (or use it as a context manager) to release it.
    """

    def __init__(
        self,
        adapters: Mapping[Signal, AdapterLike],
        caches: Mapping[Signal, CacheNamespace] | None = None,
        config: AnalysisConfig | None = None,
        scorer: ScoringEngine | None = None,
        *,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        missing = [s.value for s in SIGNAL_ORDER if s not in adapters]
        if missing:
            raise ConfigurationError(f"no adapter for signal(s): {', '.join(missing)}")

        self.config = config or AnalysisConfig()
        self.caches: dict[Signal, CacheNamespace] = dict(caches) if caches is not None else build_namespaces(self.config)
        missing = [s.value for s in SIGNAL_ORDER if s not in self.caches]
        if missing:
            raise ConfigurationError(f"no cache namespace for signal(s): {', '.join(missing)}")

        self.scorer = scorer or ScoringEngine()
        self._adapters: dict[Signal, Callable[[str, float], SignalOutcome]] = {
            signal: getattr(adapters[signal], "analyze", adapters[signal]) for signal in SIGNAL_ORDER
        }
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="trustscore-signal"
        )
        self._clock = clock

        self._lock = threading.Lock()
        self._history: deque[AnalysisRecord] = deque(maxlen=self.config.history_size)
        self._total = 0
        self._degraded = 0
        self._failed = 0
        self._duration_total_ms = 0
        self._successes = {s: 0 for s in SIGNAL_ORDER}
        self._warming = threading.Lock()
        self._closed = threading.Event()

    def __enter__(self) -> AnalysisOrchestrator:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._closed.set()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def warm(self, subjects: Iterable[str], *, force_refresh: bool = True) -> WarmingReport:
        """Fetch every signal for ``subjects`` ahead of demand.

        With ``force_refresh`` (the default) fresh entries are fetched again,
        which renews them before their TTL runs out; otherwise only missing or
        expired entries are fetched. Nothing is scored or added to history.
        Raises WarmingInProgress when another warm-up is still running.
        """
        if not self._warming.acquire(blocking=False):
            raise WarmingInProgress("cache warming is already in progress")
        try:
            started = self._clock()
            unique = list(dict.fromkeys(s.strip() for s in subjects if s.strip()))
            report = WarmingReport(subjects=len(unique))
            logger.info("cache_warming_started", subjects=len(unique), force_refresh=force_refresh)

            for subject in unique:
                pending = [
                    s for s in SIGNAL_ORDER
                    if force_refresh or CacheKey.for_signal(s, subject) not in self.caches[s]
                ]
                report.skipped += len(SIGNAL_ORDER) - len(pending)
                if not pending:
                    continue
                request = AnalysisRequest(subject=subject, force_refresh=force_refresh)
                for signal, outcome in self._dispatch(request, pending).items():
                    if isinstance(outcome, SignalSuccess):
                        report.warmed += 1
                    else:
                        report.failed += 1
                        report.errors.append(
                            {"subject": subject, "signal": signal.value, "kind": outcome.kind.value, "message": outcome.message}
                        )

            report.duration_ms = int((self._clock() - started) * 1000)
            logger.info(
                "cache_warming_completed",
                subjects=report.subjects,
                warmed=report.warmed,
                skipped=report.skipped,
                failed=report.failed,
                duration_ms=report.duration_ms,
            )
            return report
        finally:
            self._warming.release()

    def start_warming(self, subjects: Iterable[str], *, interval_s: float | None = None) -> threading.Thread:
        """Warm in a background thread; with ``interval_s``, again every interval until ``close()``."""
        subjects = list(subjects)

        def run() -> None:
            while not self._closed.is_set():
                try:
                    self.warm(subjects)
                except WarmingInProgress:
                    logger.info("cache_warming_skipped", reason="already running")
                except (RuntimeError, CancelledError):
                    # The executor was shut down under us.
                    logger.info("cache_warming_stopped")
                    return
                if interval_s is None or self._closed.wait(interval_s):
                    return

        thread = threading.Thread(target=run, name="trustscore-warm", daemon=True)
        thread.start()
        return thread

    def analyze(self, request: AnalysisRequest | str) -> CompositeResult:
        if isinstance(request, str):
            request = AnalysisRequest(subject=request)
        started = self._clock()
        started_at = datetime.now(timezone.utc)
        log = logger.bind(subject=request.subject)
        log.debug("analysis_state", state=OrchestrationState.RECEIVED.value)

        results: dict[Signal, SignalOutcome] = {}
        pending: list[Signal] = []
        for signal in SIGNAL_ORDER:
            cached = None if request.force_refresh else self._lookup(signal, request.subject)
            if cached is not None:
                results[signal] = cached
            else:
                pending.append(signal)

        if pending:
            log.debug(
                "analysis_state",
                state=OrchestrationState.DISPATCHING.value,
                signals=[s.value for s in pending],
                cache_hits=len(results),
            )
            results.update(self._dispatch(request, pending))

        log.debug("analysis_state", state=OrchestrationState.AGGREGATING.value)
        failures = [s for s in SIGNAL_ORDER if isinstance(results[s], SignalFailure)]
        completed_at = datetime.now(timezone.utc)
        if len(failures) == len(SIGNAL_ORDER):
            if self.config.all_failed_policy != "neutral":
                self._record(request.subject, started, started_at, results, None)
                log.warning("analysis_failed", failures={s.value: results[s].kind.value for s in failures})
                raise AllSignalsFailed(request.subject, {s: results[s] for s in failures})
            composite = self.scorer.neutral_result(request.subject, results, completed_at=completed_at)
        else:
            composite = self.scorer.score(request.subject, results, completed_at=completed_at)

        state = OrchestrationState.DEGRADED if composite.degraded else OrchestrationState.COMPLETE
        duration_ms = self._record(request.subject, started, started_at, results, composite)
        log.info(
            "analysis_completed",
            state=state.value,
            score=composite.overall_safety_score,
            tier=composite.risk_tier.value,
            failed=[s.value for s in failures],
            duration_ms=duration_ms,
        )
        return composite

    def _lookup(self, signal: Signal, subject: str) -> SignalSuccess | None:
        cached = self.caches[signal].get(CacheKey.for_signal(signal, subject))
        if isinstance(cached, SignalSuccess):
            return cached.model_copy(update={"from_cache": True})
        return None

    def _store(self, signal: Signal, subject: str, result: SignalSuccess) -> None:
        try:
            self.caches[signal].set(
                CacheKey.for_signal(signal, subject), result, ttl=self.config.ttl_for(signal)
            )
        except CacheCapacityRejected as e:
            logger.warning("cache_store_skipped", signal=signal.value, subject=subject, error=str(e))

    def _dispatch(self, request: AnalysisRequest, pending: list[Signal]) -> dict[Signal, SignalOutcome]:
        dispatched_at = now = self._clock()
        overall = now + (request.deadline_s or self.config.deadline_s)

        signals: dict[Future, Signal] = {}
        deadlines: dict[Future, float] = {}
        for signal in pending:
            timeout = request.timeouts.get(signal, self.config.timeout_for(signal))
            future = self._executor.submit(self._invoke, signal, request.subject, timeout)
            signals[future] = signal
            deadlines[future] = min(now + timeout, overall)

        results: dict[Signal, SignalOutcome] = {}
        waiting = set(signals)
        while waiting:
            now = self._clock()
            for future in [f for f in waiting if deadlines[f] <= now and not f.done()]:
                waiting.discard(future)
                # The worker keeps running if it already started; only the wait is abandoned.
                future.cancel()
                signal = signals[future]
                waited = deadlines[future] - dispatched_at
                results[signal] = SignalFailure(
                    kind=FailureKind.TIMEOUT,
                    message=f"{signal.value} did not answer within {waited:.2f}s",
                    retryable=True,
                )
                logger.info("signal_timed_out", signal=signal.value, subject=request.subject, waited_s=round(waited, 3))
            if not waiting:
                break
            nearest = min(deadlines[f] for f in waiting)
            done, _ = wait(waiting, timeout=max(0.0, nearest - now), return_when=FIRST_COMPLETED)
            for future in done:
                waiting.discard(future)
                results[signals[future]] = future.result()
        return results

    def _invoke(self, signal: Signal, subject: str, timeout: float) -> SignalOutcome:
        """Runs in a worker thread. Never raises."""
        started = time.monotonic()
        try:
            outcome = self._adapters[signal](subject, timeout)
        except SignalError as e:
            outcome = e.to_failure()
        except Exception as e:
            logger.exception("signal_crashed", signal=signal.value, subject=subject)
            outcome = SignalFailure(kind=FailureKind.UNEXPECTED, message=f"{type(e).__name__}: {e}")

        if not isinstance(outcome, (SignalSuccess, SignalFailure)):
            outcome = SignalFailure(
                kind=FailureKind.UNEXPECTED,
                message=f"adapter returned {type(outcome).__name__}, not a signal result",
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if isinstance(outcome, SignalSuccess):
            if outcome.from_cache:
                outcome = outcome.model_copy(update={"from_cache": False})
            # Also reached by stragglers after the deadline; their result still warms the cache.
            self._store(signal, subject, outcome)
            logger.debug("signal_completed", signal=signal.value, subject=subject, elapsed_ms=elapsed_ms)
        else:
            logger.info(
                "signal_failed",
                signal=signal.value,
                subject=subject,
                kind=outcome.kind.value,
                retryable=outcome.retryable,
                message=outcome.message,
                elapsed_ms=elapsed_ms,
            )
        return outcome

    def _record(
        self,
        subject: str,
        started: float,
        started_at: datetime,
        results: Mapping[Signal, SignalOutcome],
        composite: CompositeResult | None,
    ) -> int:
        duration_ms = int((self._clock() - started) * 1000)
        states: dict[str, str] = {}
        for signal in SIGNAL_ORDER:
            outcome = results[signal]
            if isinstance(outcome, SignalSuccess):
                states[signal.value] = "cache" if outcome.from_cache else "live"
            else:
                states[signal.value] = outcome.kind.value

        if composite is None:
            state = "failed"
        elif composite.degraded:
            state = OrchestrationState.DEGRADED.value
        else:
            state = OrchestrationState.COMPLETE.value
        record = AnalysisRecord(
            subject=subject,
            started_at=started_at.isoformat(),
            duration_ms=duration_ms,
            state=state,
            signals=states,
            score=composite.overall_safety_score if composite else None,
            tier=composite.risk_tier.value if composite else None,
        )
        with self._lock:
            self._history.append(record)
            self._total += 1
            self._duration_total_ms += duration_ms
            if composite is None:
                self._failed += 1
            elif composite.degraded:
                self._degraded += 1
            for signal in SIGNAL_ORDER:
                if isinstance(results[signal], SignalSuccess):
                    self._successes[signal] += 1
        return duration_ms

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._total
            recent = list(self._history)[-_RECENT:]
            summary: dict[str, Any] = {
                "total_analyses": total,
                "degraded_analyses": self._degraded,
                "failed_analyses": self._failed,
                "average_duration_ms": round(self._duration_total_ms / total, 1) if total else 0.0,
                "signal_availability": {
                    s.value: round(100.0 * self._successes[s] / total, 1) if total else 100.0
                    for s in SIGNAL_ORDER
                },
                "recent": [asdict(r) for r in reversed(recent)],
            }
        summary["cache"] = {s.value: self.caches[s].stats().as_dict() for s in SIGNAL_ORDER}
        return summary

    def clear_cache(self, signal: Signal | None = None) -> int:
        """Empty one namespace, or all of them. Returns the number of entries dropped."""
        targets = [signal] if signal is not None else list(SIGNAL_ORDER)
        dropped = 0
        for target in targets:
            namespace = self.caches[target]
            dropped += len(namespace)
            namespace.clear()
        logger.info("cache_cleared", signals=[t.value for t in targets], entries=dropped)
        return dropped
