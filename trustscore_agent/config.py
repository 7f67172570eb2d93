from __future__ import annotations

import os
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, model_validator

from .models import SIGNAL_ORDER, Signal

_HOUR = 60 * 60.0
_MIB = 1024 * 1024

DEFAULT_TIMEOUTS_S: dict[Signal, float] = {
    Signal.REPUTATION: 5.0,
    Signal.CERTIFICATE: 5.0,
    Signal.AI_CONTENT: 10.0,
    Signal.REGISTRATION: 8.0,
}

DEFAULT_TTLS_S: dict[Signal, float] = {
    Signal.REGISTRATION: 24 * _HOUR,
    Signal.CERTIFICATE: 6 * _HOUR,
    Signal.AI_CONTENT: 1 * _HOUR,
    Signal.REPUTATION: 0.5 * _HOUR,
}

DEFAULT_DEADLINE_S = 15.0
DEFAULT_CACHE_MAX_BYTES = 32 * _MIB
DEFAULT_EVICTION_THRESHOLD = 0.8

AllFailedPolicy = Literal["error", "neutral"]


class NamespaceConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_bytes: int = Field(DEFAULT_CACHE_MAX_BYTES, gt=0)
    eviction_threshold_ratio: float = Field(DEFAULT_EVICTION_THRESHOLD, gt=0, le=1)
    default_ttl: float = Field(..., gt=0)


class AnalysisConfig(BaseModel):
    """Every tunable of the orchestrator; per-signal gaps are filled from the defaults."""

    model_config = ConfigDict(frozen=True)

    timeouts: dict[Signal, PositiveFloat] = Field(default_factory=dict)
    deadline_s: float = Field(DEFAULT_DEADLINE_S, gt=0)
    ttls: dict[Signal, PositiveFloat] = Field(default_factory=dict)
    cache: dict[Signal, NamespaceConfig] = Field(default_factory=dict)
    all_failed_policy: AllFailedPolicy = "error"
    max_workers: int = Field(16, ge=1, le=256)
    history_size: int = Field(100, ge=1)
    # Subjects fetched ahead of demand at startup; renewed every warm_interval_s when set.
    warm_subjects: tuple[str, ...] = ()
    warm_interval_s: float | None = Field(None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        timeouts = {**DEFAULT_TIMEOUTS_S, **{Signal(k): v for k, v in (data.get("timeouts") or {}).items()}}
        ttls = {**DEFAULT_TTLS_S, **{Signal(k): v for k, v in (data.get("ttls") or {}).items()}}
        cache = {Signal(k): v for k, v in (data.get("cache") or {}).items()}
        for signal in SIGNAL_ORDER:
            if signal not in cache:
                cache[signal] = {"default_ttl": ttls[signal]}
        data.update(timeouts=timeouts, ttls=ttls, cache=cache)
        return data

    def timeout_for(self, signal: Signal) -> float:
        return self.timeouts[signal]

    def ttl_for(self, signal: Signal) -> float:
        return self.ttls[signal]

    def namespace_config(self, signal: Signal) -> NamespaceConfig:
        return self.cache[signal]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AnalysisConfig:
        env = os.environ if environ is None else environ

        def _float(name: str) -> float | None:
            raw = (env.get(name) or "").strip()
            return float(raw) if raw else None

        timeouts: dict[Signal, float] = {}
        ttls: dict[Signal, float] = {}
        for signal in SIGNAL_ORDER:
            suffix = _env_suffix(signal)
            timeout = _float(f"TRUSTSCORE_TIMEOUT_{suffix}_S")
            if timeout is not None:
                timeouts[signal] = timeout
            ttl = _float(f"TRUSTSCORE_TTL_{suffix}_S")
            if ttl is not None:
                ttls[signal] = ttl

        max_mb = _float("TRUSTSCORE_CACHE_MAX_MB")
        threshold = _float("TRUSTSCORE_CACHE_EVICTION_THRESHOLD")
        cache: dict[Signal, NamespaceConfig] = {}
        if max_mb is not None or threshold is not None:
            for signal in SIGNAL_ORDER:
                cache[signal] = NamespaceConfig(
                    max_bytes=int(max_mb * _MIB) if max_mb is not None else DEFAULT_CACHE_MAX_BYTES,
                    eviction_threshold_ratio=threshold if threshold is not None else DEFAULT_EVICTION_THRESHOLD,
                    default_ttl=ttls.get(signal, DEFAULT_TTLS_S[signal]),
                )

        kwargs: dict = {"timeouts": timeouts, "ttls": ttls, "cache": cache}
        deadline = _float("TRUSTSCORE_DEADLINE_S")
        if deadline is not None:
            kwargs["deadline_s"] = deadline
        policy = (env.get("TRUSTSCORE_ALL_FAILED_POLICY") or "").strip().lower()
        if policy:
            kwargs["all_failed_policy"] = policy
        workers = (env.get("TRUSTSCORE_MAX_WORKERS") or "").strip()
        if workers:
            kwargs["max_workers"] = int(workers)
        warm = [s.strip() for s in (env.get("TRUSTSCORE_WARM_SUBJECTS") or "").split(",") if s.strip()]
        if warm:
            kwargs["warm_subjects"] = tuple(warm)
        interval = _float("TRUSTSCORE_WARM_INTERVAL_S")
        if interval is not None:
            kwargs["warm_interval_s"] = interval
        return cls(**kwargs)


def _env_suffix(signal: Signal) -> str:
    return signal.value.replace("-", "_").upper()
