"""
Scoring engine tests: inversion, redistribution, confidence, tiers, veto cap.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from trustscore_agent.errors import AllSignalsFailed, ConfigurationError
from trustscore_agent.models import (
    SIGNAL_ORDER,
    FailureKind,
    RiskFactor,
    RiskTier,
    Signal,
    SignalFailure,
    SignalSuccess,
)
from trustscore_agent.scoring import ScoringEngine, contribution, risk_tier

WHEN = datetime(2026, 1, 1, tzinfo=timezone.utc)


def ok(danger: float, confidence: float = 1.0, *factors: RiskFactor) -> SignalSuccess:
    return SignalSuccess(danger_score=danger, confidence=confidence, risk_factors=factors)


def timeout() -> SignalFailure:
    return SignalFailure(kind=FailureKind.TIMEOUT, message="too slow", retryable=True)


def all_clean() -> dict:
    return {
        Signal.REPUTATION: ok(0.0, 0.95),
        Signal.REGISTRATION: ok(5.0, 0.8),
        Signal.CERTIFICATE: ok(10.0, 0.9),
        Signal.AI_CONTENT: ok(20.0, 0.7),
    }


class TestScenarios:
    """End-to-end scoring of the canonical situations."""

    def setup_method(self):
        self.engine = ScoringEngine()

    def test_all_clean_is_safe(self):
        result = self.engine.score("https://example.com/", all_clean(), completed_at=WHEN)
        assert result.overall_safety_score == pytest.approx(93.75)
        assert result.risk_tier is RiskTier.SAFE
        assert result.degraded is False
        assert result.failed_signals == frozenset()
        assert result.aggregate_confidence == pytest.approx(0.865)
        assert result.score_capped is False

    def test_old_domain_clean_site(self):
        results = {
            Signal.REPUTATION: ok(5.0, 0.95),
            Signal.REGISTRATION: ok(5.0, 0.9),
            Signal.CERTIFICATE: ok(10.0, 0.9),
            Signal.AI_CONTENT: ok(10.0, 0.9),
        }
        result = self.engine.score("https://example.com/", results, completed_at=WHEN)
        assert result.overall_safety_score == pytest.approx(93.25)
        assert result.risk_tier is RiskTier.SAFE

    def test_malware_flag_caps_score(self):
        results = all_clean()
        results[Signal.REPUTATION] = ok(100.0, 0.98)
        result = self.engine.score("https://bad.example/", results, completed_at=WHEN)
        assert result.overall_safety_score == 39.0
        assert result.risk_tier is RiskTier.HIGH_RISK
        assert result.score_capped is True
        # The uncapped contributions are still reported.
        assert sum(result.contributions.values()) == pytest.approx(53.75)

    def test_one_timeout_redistributes_weight(self):
        results = all_clean()
        results[Signal.AI_CONTENT] = timeout()
        result = self.engine.score("https://example.com/", results, completed_at=WHEN)

        assert result.degraded is True
        assert result.failed_signals == frozenset({Signal.AI_CONTENT})
        assert result.effective_weights[Signal.AI_CONTENT] == 0.0
        assert result.contributions[Signal.AI_CONTENT] == 0.0
        assert result.effective_weights[Signal.REPUTATION] == pytest.approx(0.40 / 0.85)
        assert sum(result.effective_weights.values()) == pytest.approx(1.0)
        assert result.overall_safety_score == pytest.approx(96.18, abs=0.01)
        # Confidence is not renormalized: the missing signal costs its share.
        assert result.aggregate_confidence == pytest.approx(0.76)

    def test_all_failed_raises(self):
        results = {s: timeout() for s in SIGNAL_ORDER}
        with pytest.raises(AllSignalsFailed) as exc:
            self.engine.score("https://example.com/", results)
        assert set(exc.value.failures) == set(SIGNAL_ORDER)
        assert exc.value.retryable is True

    def test_neutral_result(self):
        results = {s: timeout() for s in SIGNAL_ORDER}
        result = self.engine.neutral_result("https://example.com/", results, completed_at=WHEN)
        assert result.overall_safety_score == 50.0
        assert result.risk_tier is RiskTier.CAUTION
        assert result.aggregate_confidence == 0.0
        assert result.degraded is True
        assert result.failed_signals == frozenset(SIGNAL_ORDER)

    def test_missing_signal_rejected(self):
        results = all_clean()
        del results[Signal.CERTIFICATE]
        with pytest.raises(ValueError):
            self.engine.score("https://example.com/", results)

    def test_scoring_is_idempotent(self):
        results = all_clean()
        results[Signal.CERTIFICATE] = timeout()
        first = self.engine.score("https://example.com/", results, completed_at=WHEN)
        second = self.engine.score("https://example.com/", results, completed_at=WHEN)
        assert first == second

    def test_factors_are_tagged_with_their_signal(self):
        results = all_clean()
        results[Signal.CERTIFICATE] = ok(
            50.0, 0.9, RiskFactor(type="negative", code="cert-expired", description="expired", score=40, severity="high")
        )
        result = self.engine.score("https://example.com/", results)
        assert [(f.code, f.signal) for f in result.risk_factors] == [("cert-expired", Signal.CERTIFICATE)]


class TestTiers:
    @pytest.mark.parametrize(
        "score,tier",
        [
            (100.0, RiskTier.SAFE),
            (80.0, RiskTier.SAFE),
            (79.99, RiskTier.MODERATE),
            (60.0, RiskTier.MODERATE),
            (59.99, RiskTier.CAUTION),
            (40.0, RiskTier.CAUTION),
            (39.0, RiskTier.HIGH_RISK),
            (20.0, RiskTier.HIGH_RISK),
            (19.99, RiskTier.DANGER),
            (0.0, RiskTier.DANGER),
        ],
    )
    def test_tier_bounds(self, score, tier):
        assert risk_tier(score) is tier

    def test_labels(self):
        assert RiskTier.HIGH_RISK.label == "High Risk"


class TestWeights:
    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationError):
            ScoringEngine({Signal.REPUTATION: 0.4, Signal.REGISTRATION: 0.2, Signal.CERTIFICATE: 0.2, Signal.AI_CONTENT: 0.1})

    def test_small_rounding_tolerated(self):
        ScoringEngine({Signal.REPUTATION: 0.405, Signal.REGISTRATION: 0.25, Signal.CERTIFICATE: 0.2, Signal.AI_CONTENT: 0.15})

    def test_every_signal_needs_a_weight(self):
        with pytest.raises(ConfigurationError):
            ScoringEngine({Signal.REPUTATION: 0.6, Signal.REGISTRATION: 0.4})

    def test_weight_out_of_range(self):
        with pytest.raises(ConfigurationError):
            ScoringEngine({Signal.REPUTATION: 1.2, Signal.REGISTRATION: -0.2, Signal.CERTIFICATE: 0.0, Signal.AI_CONTENT: 0.0})

    def test_contribution_inverts_danger(self):
        assert contribution(0.4, 0.0) == pytest.approx(40.0)
        assert contribution(0.4, 100.0) == 0.0


_danger = st.floats(min_value=0, max_value=100, allow_nan=False)
_confidence = st.floats(min_value=0, max_value=1, allow_nan=False)


@st.composite
def signal_outcomes(draw):
    """Four outcomes with at least one success."""
    failed = draw(st.sets(st.sampled_from(SIGNAL_ORDER), max_size=3))
    return {
        s: timeout() if s in failed else ok(draw(_danger), draw(_confidence))
        for s in SIGNAL_ORDER
    }


class TestProperties:
    @hyp_settings(max_examples=200, deadline=None)
    @given(_danger)
    def test_uniform_danger_inverts(self, danger):
        """Every signal at danger d scores 100 - d."""
        engine = ScoringEngine()
        results = {s: ok(danger) for s in SIGNAL_ORDER}
        result = engine.score("s", results)
        assert result.overall_safety_score == pytest.approx(100.0 - danger, abs=0.01)

    @hyp_settings(max_examples=200, deadline=None)
    @given(signal_outcomes())
    def test_bounds(self, results):
        result = ScoringEngine().score("s", results)
        assert 0.0 <= result.overall_safety_score <= 100.0
        assert 0.0 <= result.aggregate_confidence <= 1.0
        assert sum(result.effective_weights.values()) == pytest.approx(1.0)
        assert result.degraded == bool(result.failed_signals)

    @hyp_settings(max_examples=200, deadline=None)
    @given(signal_outcomes(), st.sampled_from(SIGNAL_ORDER), _danger)
    def test_more_danger_never_raises_score(self, results, signal, extra):
        engine = ScoringEngine()
        base = engine.score("s", results)
        current = results[signal]
        if not isinstance(current, SignalSuccess):
            return
        worse = dict(results)
        worse[signal] = ok(min(100.0, current.danger_score + extra), current.confidence)
        assert engine.score("s", worse).overall_safety_score <= base.overall_safety_score
