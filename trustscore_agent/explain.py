from __future__ import annotations

from .models import (
    SIGNAL_ORDER,
    CompositeResult,
    Explanation,
    RiskFactor,
    RiskTier,
    SignalFailure,
    SignalSuccess,
)

MAX_FACTORS = 5
LOW_CONFIDENCE = 0.6

_SIGNAL_RANK = {signal: i for i, signal in enumerate(SIGNAL_ORDER)}

_SIGNAL_LABELS = {
    "reputation": "Threat reputation",
    "registration": "Domain registration",
    "certificate": "Certificate",
    "ai-content": "AI content review",
}

_RECOMMENDATIONS: dict[RiskTier, tuple[str, str]] = {
    RiskTier.SAFE: (
        "Looks safe",
        "Standard security checks passed. Always verify before sharing personal information.",
    ),
    RiskTier.MODERATE: (
        "Proceed with caution",
        "Some concerns detected but no major red flags. Use standard web safety practices.",
    ),
    RiskTier.CAUTION: (
        "Be careful",
        "Multiple risk indicators detected. Avoid entering sensitive information.",
    ),
    RiskTier.HIGH_RISK: (
        "High risk",
        "Significant security concerns detected. Only proceed if you trust the source.",
    ),
    RiskTier.DANGER: (
        "Danger",
        "Critical security threats detected. This site may attempt to steal your information.",
    ),
}


def _priority(factor: RiskFactor) -> int:
    if factor.type == "negative" and factor.severity == "high":
        return 0
    if factor.type == "negative" and factor.severity == "medium":
        return 1
    if factor.type == "positive":
        return 2
    return 3


def select_factors(result: CompositeResult, limit: int = MAX_FACTORS) -> list[RiskFactor]:
    """Most important retained factors first; stable within a signal."""
    ranked = sorted(
        enumerate(result.risk_factors),
        key=lambda item: (
            _priority(item[1]),
            _SIGNAL_RANK.get(item[1].signal, len(_SIGNAL_RANK)),
            item[0],
        ),
    )
    return [factor for _, factor in ranked[:limit]]


def confidence_caveat(result: CompositeResult) -> str | None:
    parts: list[str] = []
    if result.degraded:
        failed = ", ".join(s.value for s in SIGNAL_ORDER if s in result.failed_signals)
        parts.append(f"Some checks could not be completed ({failed}), so this result is based on partial information.")
    if result.aggregate_confidence < LOW_CONFIDENCE:
        parts.append(f"Confidence in this result is limited ({round(result.aggregate_confidence * 100)}%).")
    return " ".join(parts) or None


def render_plain(result: CompositeResult, factors: list[RiskFactor] | None = None, caveat: str | None = None) -> str:
    factors = select_factors(result) if factors is None else factors
    headline, advice = _RECOMMENDATIONS[result.risk_tier]
    lines = [f"{headline} ({round(result.overall_safety_score)}/100). {advice}"]
    if factors:
        lines.append("")
        lines.append("What we found:")
        for factor in factors:
            marker = "+" if factor.type == "positive" else "-" if factor.type == "negative" else "*"
            lines.append(f"  {marker} {factor.description}")
    if caveat:
        lines.append("")
        lines.append(f"Note: {caveat}")
    return "\n".join(lines)


def render_technical(result: CompositeResult, factors: list[RiskFactor] | None = None, caveat: str | None = None) -> str:
    factors = select_factors(result) if factors is None else factors
    lines = [
        f"Overall safety score: {result.overall_safety_score:.2f}/100 ({result.risk_tier.label})",
        f"Aggregate confidence: {result.aggregate_confidence:.3f}",
    ]
    if result.score_capped:
        lines.append("Score capped: confirmed threat-list match")
    lines.append("Signals:")
    for signal in SIGNAL_ORDER:
        outcome = result.signals[signal]
        label = _SIGNAL_LABELS[signal.value]
        if isinstance(outcome, SignalSuccess):
            source = "cache" if outcome.from_cache else "live"
            lines.append(
                f"  {signal.value} ({label}): danger={outcome.danger_score:.1f} "
                f"confidence={outcome.confidence:.2f} weight={result.effective_weights.get(signal, 0.0):.3f} "
                f"contribution={result.contributions.get(signal, 0.0):.2f} [{source}]"
            )
        elif isinstance(outcome, SignalFailure):
            retry = "retryable" if outcome.retryable else "not retryable"
            lines.append(f"  {signal.value} ({label}): FAILED {outcome.kind.value} ({retry}): {outcome.message}")
    if factors:
        lines.append("Factors:")
        for factor in factors:
            origin = factor.signal.value if factor.signal else "unknown"
            lines.append(
                f"  [{factor.type}/{factor.severity}] {origin}:{factor.code} score={factor.score:.0f} - {factor.description}"
            )
    if caveat:
        lines.append(f"Caveat: {caveat}")
    return "\n".join(lines)


def explain(result: CompositeResult) -> Explanation:
    factors = select_factors(result)
    caveat = confidence_caveat(result)
    return Explanation(
        plain=render_plain(result, factors, caveat),
        technical=render_technical(result, factors, caveat),
        factors=tuple(factors),
        caveat=caveat,
    )
