"""
Content-based legitimacy judgement using Google Gemini.

The homepage is fetched with httpx, stripped of scripts and styles (JSON-LD is
kept, it often names the business), and handed to Gemini with a rubric. The
model's JSON answer is normalized before it becomes a signal result.
"""
from __future__ import annotations

import json
import os
import re
from typing import Any

import httpx
import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .errors import SignalAuthError, SignalTimeout, SignalUnavailable, SignalUnexpectedError, error_for_status
from .models import RiskFactor, SignalSuccess
from .signals import success
from .url_patterns import UrlPatternReport, analyze_url_patterns
from .urls import hostname_of

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "gemini-3-flash-preview"

CONFIDENCE_VALUES = {"high": 0.9, "medium": 0.7, "low": 0.4}

_VERDICTS = {
    "ok": "legitimate",
    "safe": "legitimate",
    "legit": "legitimate",
    "legitimate": "legitimate",
    "caution": "caution",
    "warning": "caution",
    "warn": "caution",
    "suspicious": "suspicious",
    "sus": "suspicious",
    "scam": "likely_deceptive",
    "fraud": "likely_deceptive",
    "deceptive": "likely_deceptive",
    "likely_deceptive": "likely_deceptive",
}
_ISSUE_SEVERITY = {
    "legitimate": "low",
    "caution": "medium",
    "suspicious": "high",
    "likely_deceptive": "high",
}

MAX_FINDINGS = 5
_MAX_HTML_BYTES = 256 * 1024
_PROMPT_HTML_CHARS = 45000
_USER_AGENT = "Mozilla/5.0 (compatible; trustscore-agent/1.0)"

_STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_RE = re.compile(r"<script\b([^>]*)>.*?</script>", re.IGNORECASE | re.DOTALL)


def strip_page(html: str) -> str:
    """Drop styles and executable scripts, keep ld+json blocks, squeeze whitespace."""
    if not html:
        return html
    cleaned = _STYLE_RE.sub(" ", html)
    cleaned = _SCRIPT_RE.sub(lambda m: m.group(0) if "ld+json" in m.group(1).lower() else " ", cleaned)
    return re.sub(r"\s{2,}", " ", cleaned).strip()


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    return [s for s in (str(item).strip() for item in items if item is not None) if s]


def normalize_judgement(raw: Any) -> dict[str, Any]:
    """Clamp and coerce the model's answer; partial or off-enum output is tolerated."""
    if not isinstance(raw, dict):
        raise SignalUnexpectedError("Gemini answer is not a JSON object")

    try:
        score = int(float(raw.get("legitimacy_score")))
    except (TypeError, ValueError):
        score = 50
    score = max(0, min(100, score))

    confidence = str(raw.get("confidence") or "medium").strip().lower()
    if confidence in ("med", "mid"):
        confidence = "medium"
    if confidence not in CONFIDENCE_VALUES:
        confidence = "medium"

    verdict = _VERDICTS.get(str(raw.get("verdict") or "caution").strip().lower(), "caution")

    return {
        "legitimacy_score": score,
        "confidence": confidence,
        "verdict": verdict,
        "detected_issues": _as_str_list(raw.get("detected_issues")),
        "positive_signals": _as_str_list(raw.get("positive_signals")),
        "summary": str(raw.get("summary") or "").strip() or "Analysis completed",
    }


def assess_judgement(judgement: dict[str, Any], url_report: UrlPatternReport | None = None) -> SignalSuccess:
    """Danger is the inverse of legitimacy, raised to the URL heuristic score when that is higher."""
    model_danger = 100.0 - judgement["legitimacy_score"]
    severity = _ISSUE_SEVERITY[judgement["verdict"]]
    factors: list[RiskFactor] = []
    danger = model_danger
    if url_report is not None:
        factors += url_report.factors
        danger = max(danger, url_report.score)
    factors += [
        RiskFactor(type="negative", code="ai-content-issue", description=issue, score=model_danger, severity=severity)  # type: ignore[arg-type]
        for issue in judgement["detected_issues"][:MAX_FINDINGS]
    ]
    factors += [
        RiskFactor(type="positive", code="ai-content-trust-signal", description=signal)
        for signal in judgement["positive_signals"][:MAX_FINDINGS]
    ]
    return success(danger, CONFIDENCE_VALUES[judgement["confidence"]], factors)


def build_prompt(url: str, hostname: str, page: str | None, url_report: UrlPatternReport | None = None) -> str:
    indicators = "\n".join(f"- {f.description}" for f in url_report.factors) if url_report else ""
    return f"""You review websites for signs of fraud, phishing and deceptive commerce.
Judge the site below from its own content and answer with a legitimacy score.

Strong warning signs (score 10-35): impossible or miracle products, luxury goods at extreme
discounts, no verifiable business identity, cloned branding from a known company, fake or
copy-pasted testimonials, pressure tactics on every page, requests for credentials or payment
details outside a normal checkout.

Weaker warning signs (score 36-55): generic template store, vague or missing refund and privacy
policies, stock imagery only, no contact details beyond a form.

Trust signs (score 56-85): named company with address and phone, clear policies, standard
payment processors, consistent branding. Major established brands score 85-95 even when
content could not be fetched.

URL: {url}
Hostname: {hostname}

Automated URL checks:
{indicators or "- nothing unusual"}

Page content:
{(page or "Not available")[:_PROMPT_HTML_CHARS]}

Respond with ONLY a JSON object:
{{
  "legitimacy_score": <0-100 integer>,
  "confidence": "<high|medium|low>",
  "verdict": "<legitimate|caution|suspicious|likely_deceptive>",
  "detected_issues": ["<specific problems found>"],
  "positive_signals": ["<trust indicators found>"],
  "summary": "<one sentence>"
}}"""


def parse_model_text(text: str) -> Any:
    text = (text or "").strip()
    if not text:
        raise SignalUnexpectedError("Gemini returned an empty answer")
    # Fenced JSON still shows up occasionally despite the JSON mime type.
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    try:
        return json.loads(text.strip())
    except ValueError as e:
        raise SignalUnexpectedError("Gemini answer is not valid JSON") from e


class GeminiJudge:
    """AI content signal. ``client`` and ``transport`` are injectable for tests."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        client: Any = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else (os.getenv("GEMINI_API_KEY") or "").strip()
        self.model = model or os.getenv("GEMINI_MODEL") or DEFAULT_MODEL
        self._client = client
        self.transport = transport

    def fetch_page(self, url: str, timeout: float) -> str | None:
        """Homepage text for the prompt, or None when it cannot be had."""
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True, transport=self.transport) as client:
                res = client.get(
                    url,
                    headers={
                        "user-agent": _USER_AGENT,
                        "accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                        "accept-language": "en-US,en;q=0.6",
                    },
                )
        except httpx.HTTPError as e:
            logger.info("page_fetch_failed", url=url, error=str(e))
            return None

        content_type = (res.headers.get("content-type") or "").lower()
        if not res.is_success or "text/html" not in content_type:
            logger.info("page_not_usable", url=url, status=res.status_code, content_type=content_type)
            return None
        body = res.content[:_MAX_HTML_BYTES].decode("utf-8", errors="replace")
        return strip_page(body) or None

    def _generate(self, prompt: str, timeout: float) -> str:
        client = self._client or genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=max(1, int(timeout * 1000))),
        )
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            temperature=0.2,
            max_output_tokens=2048,
        )
        try:
            resp = client.models.generate_content(
                model=self.model,
                contents=[types.Content(role="user", parts=[types.Part.from_text(text=prompt)])],
                config=config,
            )
        except genai_errors.APIError as e:
            raise error_for_status(int(e.code or 0), f"Gemini returned {e.code}: {e.message}") from e
        except httpx.TimeoutException as e:
            raise SignalTimeout("Gemini timed out") from e
        except httpx.TransportError as e:
            raise SignalUnavailable(f"Gemini is unreachable: {e}") from e
        return getattr(resp, "text", None) or ""

    def analyze(self, subject: str, timeout: float) -> SignalSuccess:
        if not self.api_key and self._client is None:
            raise SignalAuthError("GEMINI_API_KEY is not set")

        hostname = hostname_of(subject)
        url_report = analyze_url_patterns(subject)
        # Half the budget for the page, the rest for the model.
        page = self.fetch_page(subject, timeout / 2)
        text = self._generate(build_prompt(subject, hostname, page, url_report), timeout / 2)
        judgement = normalize_judgement(parse_model_text(text))
        logger.debug(
            "ai_judgement",
            hostname=hostname,
            score=judgement["legitimacy_score"],
            verdict=judgement["verdict"],
            confidence=judgement["confidence"],
            page_available=page is not None,
            url_patterns=url_report.patterns,
        )
        return assess_judgement(judgement, url_report)
