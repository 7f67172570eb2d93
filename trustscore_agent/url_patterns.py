"""
URL-level scam heuristics that need no network access.

These feed the AI content signal: they are folded into the Gemini prompt and
into its result, so a page that cannot be fetched still carries URL evidence
(lookalike brands, throwaway TLDs, IP-literal hosts, phishing-style paths).
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlparse

import structlog

from .models import RiskFactor
from .urls import hostname_of, registrable_domain

logger = structlog.get_logger(__name__)

SUSPICIOUS_TLDS = frozenset(
    {
        "tk", "ml", "ga", "cf", "gq",
        "top", "click", "download", "stream", "science",
        "racing", "review", "party", "trade", "webcam",
    }
)

HIGH_VALUE_BRANDS = (
    "paypal", "amazon", "microsoft", "apple", "google", "facebook", "instagram",
    "twitter", "linkedin", "github", "dropbox", "netflix", "spotify",
    "banking", "chase", "wellsfargo", "bankofamerica", "citibank",
)

SUSPICIOUS_KEYWORDS = ("login", "signin", "verify", "secure", "account", "update", "wallet", "confirm", "unlock")

URL_SHORTENERS = frozenset({"bit.ly", "tinyurl.com", "goo.gl", "t.co", "ow.ly", "is.gd", "cutt.ly"})

# Cyrillic and Greek letters that render like ASCII ones.
_LOOKALIKES = str.maketrans(
    {
        "а": "a", "ɑ": "a", "α": "a",
        "е": "e", "é": "e", "è": "e",
        "і": "i", "í": "i", "ì": "i",
        "о": "o", "ο": "o", "ө": "o",
        "р": "p", "ρ": "p",
        "с": "c", "ϲ": "c",
        "у": "y", "ý": "y",
        "х": "x", "χ": "x",
        "η": "n", "ñ": "n",
        "м": "m", "н": "h", "ԁ": "d", "ѕ": "s", "š": "s",
        "τ": "t", "υ": "u", "ü": "u", "ν": "v", "ω": "w",
    }
)

_PHISHING_PATHS = (
    re.compile(r"/(login|signin|sign-in|log-in)[\w\-]*\.(php|html?|aspx?)", re.IGNORECASE),
    re.compile(r"/(verify|verification|validate|confirm|secure)[\w\-]*\.(php|html?)", re.IGNORECASE),
    re.compile(r"/(update|renewal|suspended|locked|blocked)[\w\-]*\.(php|html?)", re.IGNORECASE),
    re.compile(r"/(account|billing|security|profile)[\w\-]*\.(php|html?)", re.IGNORECASE),
    re.compile(r"/(urgent|immediate|action|required)[\w\-]*\.(php|html?)", re.IGNORECASE),
)
_SUSPICIOUS_PARAMS = (
    re.compile(r"^(redirect|continue|return|next|goto|url)=https?://", re.IGNORECASE),
    re.compile(r"^(token|session|auth|key)=[a-zA-Z0-9+/=]{20,}$", re.IGNORECASE),
    re.compile(r"^(user|username|email|login)=.+", re.IGNORECASE),
)
_HEAVY_ENCODING = re.compile(r"(%[0-9A-Fa-f]{2}){5,}")

_LONG_URL = 100
_MAX_SUBDOMAINS = 3
_TYPO_SIMILARITY = 0.7
_IMPERSONATION_CONFIDENCE = 0.6

PATTERN_SCORES = {
    "homograph": 40.0,
    "typosquat": 35.0,
    "brand-impersonation": 30.0,
    "phishing-path": 25.0,
    "suspicious-tld": 20.0,
    "obfuscation": 15.0,
    "many-subdomains": 10.0,
    "suspicious-keyword": 10.0,
}


@dataclass
class UrlPatternReport:
    url: str
    hostname: str
    score: float = 0.0
    patterns: list[str] = field(default_factory=list)
    factors: list[RiskFactor] = field(default_factory=list)
    brand_target: str | None = None

    def add(self, pattern: str, description: str) -> None:
        score = PATTERN_SCORES[pattern]
        self.patterns.append(pattern)
        self.factors.append(
            RiskFactor(
                type="negative",
                code=f"url-{pattern}",
                description=description,
                score=score,
                severity="high" if score >= 30 else "medium" if score >= 20 else "low",
            )
        )
        self.score = min(100.0, self.score + score)


def levenshtein(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb)))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    return 1.0 if longest == 0 else 1.0 - levenshtein(a, b) / longest


def _unicode_host(hostname: str) -> str:
    labels = []
    for label in hostname.split("."):
        if label.startswith("xn--"):
            try:
                label = label.encode("ascii").decode("idna")
            except UnicodeError:
                pass
        labels.append(label)
    return ".".join(labels)


def _is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return True


def _closest_brand(label: str, skeleton: str, name: str) -> tuple[str, float] | None:
    """The brand the host most plausibly imitates, with a confidence.

    ``skeleton`` is the label with lookalike characters folded to ASCII; the
    brand's own domain (an exact ASCII label) imitates nothing.
    """
    if label in HIGH_VALUE_BRANDS:
        return None
    best: tuple[str, float] | None = None
    for brand in HIGH_VALUE_BRANDS:
        if brand in name:
            confidence = 0.95
        elif skeleton == brand:
            confidence = 0.85
        else:
            confidence = min(0.85, similarity(skeleton, brand))
        if confidence > _IMPERSONATION_CONFIDENCE and (best is None or confidence > best[1]):
            best = (brand, confidence)
    return best


def analyze_url_patterns(url: str) -> UrlPatternReport:
    """Score one normalized URL against the scam heuristics. Never raises for a valid URL."""
    hostname = _unicode_host(hostname_of(url))
    report = UrlPatternReport(url=url, hostname=hostname)
    parsed = urlparse(url)

    if _is_ip_literal(hostname):
        report.add("obfuscation", "The address uses a raw IP instead of a domain name.")
        logger.debug("url_patterns", hostname=hostname, patterns=report.patterns, score=report.score)
        return report

    domain = registrable_domain(hostname)
    label = domain.split(".")[0]
    # Everything left of the public suffix, minus a leading www.
    name = hostname.removeprefix("www.")
    name = name[: len(name) - len(domain) + len(label)]

    skeleton = label.translate(_LOOKALIKES)
    if skeleton != label and skeleton.isascii():
        report.add("homograph", f"The domain uses lookalike characters ({label} reads as {skeleton}).")

    match = _closest_brand(label, skeleton, name.translate(_LOOKALIKES))
    if match is not None:
        brand, confidence = match
        report.brand_target = brand
        if skeleton != brand and (brand in name or similarity(skeleton, brand) > _TYPO_SIMILARITY):
            report.add("typosquat", f"The domain imitates {brand} ({domain}).")
        if confidence > 0.8:
            report.add("brand-impersonation", f"The address appears to impersonate {brand}.")

    tld = domain.rsplit(".", 1)[-1]
    if tld in SUSPICIOUS_TLDS:
        report.add("suspicious-tld", f"The .{tld} domain ending is common in throwaway scam sites.")

    subdomains = hostname.count(".") - domain.count(".")
    if subdomains > _MAX_SUBDOMAINS:
        report.add("many-subdomains", f"The address has {subdomains} levels of subdomains.")

    keywords = [k for k in SUSPICIOUS_KEYWORDS if k in label]
    if keywords:
        report.add("suspicious-keyword", f"The domain name contains {', '.join(keywords)}.")

    params = [f"{k}={v}" for k, v in parse_qsl(parsed.query, keep_blank_values=True)]
    if any(p.search(parsed.path) for p in _PHISHING_PATHS) or any(
        p.search(param) for p in _SUSPICIOUS_PARAMS for param in params
    ):
        report.add("phishing-path", "The path or query looks like a credential or redirect lure.")

    if _HEAVY_ENCODING.search(url) or len(url) >= _LONG_URL or domain in URL_SHORTENERS:
        report.add("obfuscation", "The address is shortened, very long or heavily encoded.")

    logger.debug("url_patterns", hostname=hostname, patterns=report.patterns, score=report.score)
    return report
