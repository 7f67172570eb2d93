"""
HTTP surface tests through FastAPI's TestClient, backed by stub adapters.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import StubAdapter
from trustscore_agent.config import AnalysisConfig
from trustscore_agent.errors import SignalUnavailable
from trustscore_agent.main import create_app
from trustscore_agent.models import SIGNAL_ORDER, Signal


@pytest.fixture
def client_for(make_orchestrator):
    clients: list[TestClient] = []

    def _client(adapters) -> TestClient:
        client = TestClient(create_app(make_orchestrator(adapters)))
        client.__enter__()
        clients.append(client)
        return client

    yield _client

    for client in clients:
        client.__exit__(None, None, None)


class TestAnalyzeEndpoint:
    def test_healthz(self, client_for, clean_adapters):
        assert client_for(clean_adapters).get("/healthz").json() == {"ok": True}

    def test_analyze(self, client_for, clean_adapters):
        res = client_for(clean_adapters).post("/analyze", json={"url": "Example.com"})
        assert res.status_code == 200
        body = res.json()
        assert body["normalized_url"] == "https://example.com/"
        assert body["hostname"] == "example.com"
        assert body["agent"] == "python"
        assert body["result"]["risk_tier"] == "safe"
        assert body["result"]["degraded"] is False
        assert set(body["result"]["signals"]) == {s.value for s in SIGNAL_ORDER}
        assert body["explanation"]["plain"].startswith("Looks safe")
        assert body["warnings"] == []
        assert "total" in body["timings_ms"]

    def test_invalid_url(self, client_for, clean_adapters):
        res = client_for(clean_adapters).post("/analyze", json={"url": "not a url"})
        assert res.status_code == 400

    def test_timeouts_forwarded_in_seconds(self, client_for, clean_adapters):
        client = client_for(clean_adapters)
        res = client.post("/analyze", json={"url": "example.com", "timeouts_ms": {"ai-content": 2500}})
        assert res.status_code == 200
        assert clean_adapters[Signal.AI_CONTENT].calls[0][1] == 2.5

    def test_unknown_signal_in_timeouts(self, client_for, clean_adapters):
        res = client_for(clean_adapters).post("/analyze", json={"url": "example.com", "timeouts_ms": {"whois": 2500}})
        assert res.status_code == 422

    def test_degraded_result_warns(self, client_for, clean_adapters):
        clean_adapters[Signal.CERTIFICATE] = StubAdapter(error=SignalUnavailable("refused"))
        body = client_for(clean_adapters).post("/analyze", json={"url": "example.com"}).json()
        assert body["result"]["degraded"] is True
        assert body["result"]["failed_signals"] == ["certificate"]
        assert body["warnings"] == ["certificate check failed (unavailable)"]
        assert body["explanation"]["caveat"]

    def test_all_failed_is_503(self, client_for):
        adapters = {s: StubAdapter(error=SignalUnavailable("down")) for s in SIGNAL_ORDER}
        res = client_for(adapters).post("/analyze", json={"url": "example.com"})
        assert res.status_code == 503
        assert res.headers["retry-after"] == "2"
        assert set(res.json()["detail"]["failures"]) == {s.value for s in SIGNAL_ORDER}


class TestAdminEndpoints:
    def test_stats(self, client_for, clean_adapters):
        client = client_for(clean_adapters)
        client.post("/analyze", json={"url": "example.com"})
        stats = client.get("/stats").json()
        assert stats["total_analyses"] == 1
        assert stats["cache"]["reputation"]["entries"] == 1

    def test_clear_cache(self, client_for, clean_adapters):
        client = client_for(clean_adapters)
        client.post("/analyze", json={"url": "example.com"})
        assert client.delete("/cache/reputation").json() == {"cleared": 1, "signals": ["reputation"]}
        assert client.delete("/cache").json()["cleared"] == 3

    def test_clear_unknown_namespace(self, client_for, clean_adapters):
        assert client_for(clean_adapters).delete("/cache/whois").status_code == 422

    def test_startup_warms_configured_subjects(self, clean_adapters, make_orchestrator):
        orchestrator = make_orchestrator(clean_adapters, config=AnalysisConfig(warm_subjects=("Example.com",)))
        with TestClient(create_app(orchestrator)) as client:
            client.app.state.warmer.join(5)
            stats = client.get("/stats").json()

        assert stats["total_analyses"] == 0
        assert all(stats["cache"][s.value]["entries"] == 1 for s in SIGNAL_ORDER)
        assert clean_adapters[Signal.REPUTATION].calls[0][0] == "https://example.com/"
