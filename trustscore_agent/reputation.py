from __future__ import annotations

import os
from typing import Any, Iterable

import httpx

from .errors import SignalAuthError
from .models import RiskFactor, SignalSuccess
from .signals import check_response, parse_json, success, upstream_errors, clamp_score

SAFE_BROWSING_URL = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
_SERVICE = "Safe Browsing"

THREAT_SCORES = {
    "MALWARE": 100.0,
    "SOCIAL_ENGINEERING": 95.0,
    "UNWANTED_SOFTWARE": 80.0,
    "POTENTIALLY_HARMFUL_APPLICATION": 60.0,
}
_UNKNOWN_THREAT_SCORE = 50.0

PLATFORM_MULTIPLIERS = {
    "ANY_PLATFORM": 1.0,
    "ALL_PLATFORMS": 1.0,
    "WINDOWS": 0.9,
    "ANDROID": 0.8,
    "CHROME": 0.7,
    "LINUX": 0.6,
    "OSX": 0.6,
    "IOS": 0.5,
}

_THREAT_TEXT = {
    "MALWARE": "malware",
    "SOCIAL_ENGINEERING": "phishing/social engineering",
    "UNWANTED_SOFTWARE": "unwanted software",
    "POTENTIALLY_HARMFUL_APPLICATION": "a potentially harmful application",
}

CLEAN_CONFIDENCE = 0.95
MATCH_CONFIDENCE = 0.98


def _severity(score: float) -> str:
    if score >= 80:
        return "high"
    if score >= 50:
        return "medium"
    return "low"


def assess_matches(matches: Iterable[dict[str, Any]]) -> SignalSuccess:
    """Danger is the worst single match; each match becomes a negative factor."""
    factors: list[RiskFactor] = []
    danger = 0.0
    for match in matches:
        threat = str(match.get("threatType") or "THREAT_TYPE_UNSPECIFIED")
        platform = str(match.get("platformType") or "ANY_PLATFORM")
        score = clamp_score(THREAT_SCORES.get(threat, _UNKNOWN_THREAT_SCORE) * PLATFORM_MULTIPLIERS.get(platform, 1.0))
        where = "all platforms" if platform in ("ANY_PLATFORM", "ALL_PLATFORMS") else platform.lower()
        factors.append(
            RiskFactor(
                type="negative",
                code=f"reputation-{threat.lower()}",
                description=f"Google Safe Browsing detected {_THREAT_TEXT.get(threat, 'a threat')} for {where}.",
                score=score,
                severity=_severity(score),
            )
        )
        danger = max(danger, score)

    if not factors:
        return success(
            0.0,
            CLEAN_CONFIDENCE,
            [
                RiskFactor(
                    type="positive",
                    code="reputation-clean",
                    description="Not listed by Google Safe Browsing.",
                )
            ],
        )
    return success(danger, MATCH_CONFIDENCE, factors)


class SafeBrowsingAdapter:
    """Google Safe Browsing v4 lookup for a single URL."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        endpoint: str = SAFE_BROWSING_URL,
        transport: httpx.BaseTransport | None = None,
        client_id: str = "trustscore-agent",
        client_version: str = "1.0.0",
    ):
        self.api_key = api_key if api_key is not None else (os.getenv("GOOGLE_SAFE_BROWSING_API_KEY") or "").strip()
        self.endpoint = endpoint
        self.transport = transport
        self.client_id = client_id
        self.client_version = client_version

    def _body(self, url: str) -> dict[str, Any]:
        return {
            "client": {"clientId": self.client_id, "clientVersion": self.client_version},
            "threatInfo": {
                "threatTypes": list(THREAT_SCORES),
                "platformTypes": ["ANY_PLATFORM", "WINDOWS", "LINUX", "ANDROID", "OSX", "IOS", "CHROME"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url}],
            },
        }

    def analyze(self, subject: str, timeout: float) -> SignalSuccess:
        if not self.api_key:
            raise SignalAuthError("GOOGLE_SAFE_BROWSING_API_KEY is not set")

        with upstream_errors(_SERVICE):
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                res = client.post(self.endpoint, params={"key": self.api_key}, json=self._body(subject))
        check_response(res, _SERVICE)
        data = parse_json(res, _SERVICE)
        return assess_matches((data or {}).get("matches") or [])
