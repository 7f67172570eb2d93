"""
URL heuristics feeding the AI content signal.
"""
from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest

from trustscore_agent.ai_judge import GeminiJudge, assess_judgement, build_prompt, normalize_judgement
from trustscore_agent.url_patterns import analyze_url_patterns, levenshtein, similarity


def _codes(url: str) -> set[str]:
    return {f.code for f in analyze_url_patterns(url).factors}


class TestHeuristics:
    @pytest.mark.parametrize(
        "url",
        ["https://example.com/", "https://www.paypal.com/signin", "https://mail.google.com/", "https://shop.acme.co.uk/"],
    )
    def test_ordinary_urls_are_clean(self, url):
        report = analyze_url_patterns(url)
        assert report.score == 0.0
        assert report.factors == []

    def test_typosquat(self):
        report = analyze_url_patterns("https://paypa1.com/")
        assert report.brand_target == "paypal"
        assert {"url-typosquat", "url-brand-impersonation"} <= _codes("https://paypa1.com/")
        assert report.score == 65.0

    def test_brand_hidden_in_subdomain(self):
        report = analyze_url_patterns("https://paypal.com.account-check.top/")
        assert report.brand_target == "paypal"
        assert set(report.patterns) >= {"typosquat", "brand-impersonation", "suspicious-tld", "suspicious-keyword"}
        assert report.score == 95.0

    def test_homograph(self):
        # Cyrillic "а" in place of the Latin one.
        report = analyze_url_patterns("https://pаypal.com/")
        assert "homograph" in report.patterns
        assert report.brand_target == "paypal"
        assert report.factors[0].severity == "high"

    def test_ip_literal(self):
        report = analyze_url_patterns("http://192.168.10.4/login")
        assert report.patterns == ["obfuscation"]
        assert report.score == 15.0

    def test_suspicious_tld_and_phishing_path(self):
        report = analyze_url_patterns("https://free-gifts.tk/verify-account.php?redirect=https://other.example/")
        assert set(report.patterns) == {"suspicious-tld", "phishing-path"}
        assert report.score == 45.0

    def test_many_subdomains(self):
        assert _codes("https://a.b.c.d.example.com/") == {"url-many-subdomains"}

    def test_score_is_capped(self):
        report = analyze_url_patterns("https://pаypal-secure-login.a.b.c.d.tk/account-update.php?" + "q=%20%20%20%20%20%20")
        assert report.score == 100.0

    def test_edit_distance(self):
        assert levenshtein("paypal", "paypl") == 1
        assert levenshtein("", "abc") == 3
        assert similarity("amazon", "amazon") == 1.0


class TestAiMerge:
    def test_url_danger_raises_model_danger(self):
        report = analyze_url_patterns("https://paypa1.com/")
        judgement = normalize_judgement({"legitimacy_score": 80, "confidence": "high", "verdict": "legitimate"})
        result = assess_judgement(judgement, report)
        assert result.danger_score == 65.0
        assert result.risk_factors[0].code.startswith("url-")

    def test_model_danger_kept_when_higher(self):
        report = analyze_url_patterns("https://free-gifts.tk/")
        judgement = normalize_judgement({"legitimacy_score": 10, "verdict": "scam", "detected_issues": ["fake shop"]})
        result = assess_judgement(judgement, report)
        assert result.danger_score == 90.0
        assert [f.code for f in result.risk_factors] == ["url-suspicious-tld", "ai-content-issue"]

    def test_prompt_lists_url_findings(self):
        report = analyze_url_patterns("https://paypa1.com/")
        prompt = build_prompt("https://paypa1.com/", "paypa1.com", None, report)
        assert "imitates paypal" in prompt
        assert "nothing unusual" not in prompt
        assert "nothing unusual" in build_prompt("https://example.com/", "example.com", None)

    def test_unfetchable_page_keeps_url_evidence(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        answer = json.dumps({"legitimacy_score": 70, "confidence": "low", "verdict": "caution"})
        client = SimpleNamespace(
            models=SimpleNamespace(generate_content=lambda **kwargs: SimpleNamespace(text=answer))
        )
        judge = GeminiJudge("", client=client, transport=httpx.MockTransport(refuse))
        result = judge.analyze("https://paypa1.com/", 4.0)
        assert result.danger_score == 65.0
        assert "url-typosquat" in {f.code for f in result.risk_factors}
