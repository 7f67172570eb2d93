"""
Configuration defaults and environment overrides.
"""
from __future__ import annotations

import pydantic
import pytest

from trustscore_agent.config import DEFAULT_CACHE_MAX_BYTES, AnalysisConfig
from trustscore_agent.models import Signal


class TestDefaults:
    def test_per_signal_defaults(self):
        config = AnalysisConfig()
        assert config.timeout_for(Signal.REPUTATION) == 5.0
        assert config.timeout_for(Signal.CERTIFICATE) == 5.0
        assert config.timeout_for(Signal.AI_CONTENT) == 10.0
        assert config.timeout_for(Signal.REGISTRATION) == 8.0
        assert config.ttl_for(Signal.REGISTRATION) == 24 * 3600
        assert config.ttl_for(Signal.REPUTATION) == 30 * 60
        assert config.deadline_s == 15.0
        assert config.all_failed_policy == "error"
        assert config.namespace_config(Signal.CERTIFICATE).max_bytes == DEFAULT_CACHE_MAX_BYTES

    def test_partial_override_keeps_other_defaults(self):
        config = AnalysisConfig(timeouts={"reputation": 2.0})
        assert config.timeout_for(Signal.REPUTATION) == 2.0
        assert config.timeout_for(Signal.AI_CONTENT) == 10.0

    def test_ttl_override_flows_into_namespace(self):
        config = AnalysisConfig(ttls={Signal.CERTIFICATE: 99.0})
        assert config.namespace_config(Signal.CERTIFICATE).default_ttl == 99.0

    @pytest.mark.parametrize(
        "kwargs",
        [{"timeouts": {"reputation": 0}}, {"deadline_s": -1}, {"all_failed_policy": "retry"}, {"max_workers": 0}],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(pydantic.ValidationError):
            AnalysisConfig(**kwargs)


class TestFromEnv:
    def test_reads_variables(self):
        config = AnalysisConfig.from_env(
            {
                "TRUSTSCORE_TIMEOUT_AI_CONTENT_S": "3.5",
                "TRUSTSCORE_TTL_REPUTATION_S": "60",
                "TRUSTSCORE_CACHE_MAX_MB": "2",
                "TRUSTSCORE_CACHE_EVICTION_THRESHOLD": "0.5",
                "TRUSTSCORE_DEADLINE_S": "9",
                "TRUSTSCORE_ALL_FAILED_POLICY": "Neutral",
                "TRUSTSCORE_MAX_WORKERS": "4",
            }
        )
        assert config.timeout_for(Signal.AI_CONTENT) == 3.5
        assert config.ttl_for(Signal.REPUTATION) == 60.0
        namespace = config.namespace_config(Signal.REPUTATION)
        assert namespace.max_bytes == 2 * 1024 * 1024
        assert namespace.eviction_threshold_ratio == 0.5
        assert namespace.default_ttl == 60.0
        assert config.deadline_s == 9.0
        assert config.all_failed_policy == "neutral"
        assert config.max_workers == 4

    def test_empty_environment_gives_defaults(self):
        assert AnalysisConfig.from_env({}) == AnalysisConfig()

    def test_warming_variables(self):
        config = AnalysisConfig.from_env(
            {"TRUSTSCORE_WARM_SUBJECTS": "example.com, https://other.example/ ,", "TRUSTSCORE_WARM_INTERVAL_S": "900"}
        )
        assert config.warm_subjects == ("example.com", "https://other.example/")
        assert config.warm_interval_s == 900.0
        assert AnalysisConfig().warm_subjects == ()
