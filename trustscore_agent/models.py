from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat


class Signal(str, Enum):
    REPUTATION = "reputation"
    REGISTRATION = "registration"
    CERTIFICATE = "certificate"
    AI_CONTENT = "ai-content"


# Canonical order; also the tie-break order for explanations.
SIGNAL_ORDER: tuple[Signal, ...] = (
    Signal.REPUTATION,
    Signal.REGISTRATION,
    Signal.CERTIFICATE,
    Signal.AI_CONTENT,
)


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    UNEXPECTED = "unexpected"


class RiskTier(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    CAUTION = "caution"
    HIGH_RISK = "high_risk"
    DANGER = "danger"

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]


_TIER_LABELS = {
    RiskTier.SAFE: "Safe",
    RiskTier.MODERATE: "Moderate",
    RiskTier.CAUTION: "Caution",
    RiskTier.HIGH_RISK: "High Risk",
    RiskTier.DANGER: "Danger",
}

FactorType = Literal["positive", "negative", "neutral"]
Severity = Literal["low", "medium", "high"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskFactor(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FactorType
    code: str
    description: str
    score: float = Field(0.0, ge=0, le=100)
    severity: Severity = "low"
    signal: Signal | None = None


class SignalSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    danger_score: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=1)
    risk_factors: tuple[RiskFactor, ...] = ()
    from_cache: bool = False


class SignalFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    kind: FailureKind
    message: str
    retryable: bool = False


SignalResult = Annotated[Union[SignalSuccess, SignalFailure], Field(discriminator="status")]


class CacheKey(BaseModel):
    """(namespace, normalized subject) pair identifying one cached signal result."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    subject: str

    @classmethod
    def for_signal(cls, signal: Signal, subject: str) -> CacheKey:
        """Key ``subject`` at the scope the signal actually looks at.

        Registration data belongs to the registrable domain and certificates to
        the hostname, so every path under one site shares those entries.
        """
        from .errors import ValidationError
        from .urls import hostname_of, registrable_domain

        scoped = subject.strip().lower()
        try:
            if signal is Signal.REGISTRATION:
                scoped = registrable_domain(hostname_of(scoped))
            elif signal is Signal.CERTIFICATE:
                scoped = hostname_of(scoped)
        except ValidationError:
            # No hostname to scope by; the whole subject is the key.
            scoped = subject.strip().lower()
        return cls(namespace=signal.value, subject=scoped)


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=_utcnow)
    # Per-signal overrides in seconds; absent signals use the configured defaults.
    timeouts: dict[Signal, PositiveFloat] = Field(default_factory=dict)
    deadline_s: float | None = Field(None, gt=0)
    force_refresh: bool = False


class CompositeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str
    signals: dict[Signal, SignalResult]
    overall_safety_score: float = Field(..., ge=0, le=100)
    risk_tier: RiskTier
    aggregate_confidence: float = Field(..., ge=0, le=1)
    degraded: bool
    failed_signals: frozenset[Signal] = frozenset()
    completed_at: datetime

    effective_weights: dict[Signal, float] = Field(default_factory=dict)
    contributions: dict[Signal, float] = Field(default_factory=dict)
    risk_factors: tuple[RiskFactor, ...] = ()
    score_capped: bool = False


class Explanation(BaseModel):
    model_config = ConfigDict(frozen=True)

    plain: str
    technical: str
    factors: tuple[RiskFactor, ...] = ()
    caveat: str | None = None


class AnalyzeRequest(BaseModel):
    url: str = Field(..., min_length=1)
    # Keys are signal names ("reputation", "registration", "certificate", "ai-content").
    timeouts_ms: dict[Signal, Annotated[int, Field(ge=100, le=60000)]] = Field(default_factory=dict)
    deadline_ms: int | None = Field(None, ge=1000, le=60000)
    force_refresh: bool = Field(False)


class AnalyzeResponse(BaseModel):
    normalized_url: str
    hostname: str
    result: CompositeResult
    explanation: Explanation

    agent: Literal["python"] = "python"
    analyzed_at: str
    timings_ms: dict[str, int]
    warnings: list[str] = []
