from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from .models import RiskFactor, SignalSuccess
from .signals import check_response, clamp_score, parse_json, success, upstream_errors
from .urls import hostname_of, registrable_domain

RDAP_URL = "https://rdap.org/domain/{domain}"
_SERVICE = "RDAP"

UNKNOWN_AGE_DANGER = 30.0
UNKNOWN_AGE_CONFIDENCE = 0.4
KNOWN_AGE_CONFIDENCE = 0.8

# (exclusive upper bound in days, danger, factor type, severity, wording)
_AGE_BUCKETS: tuple[tuple[int, float, str, str, str], ...] = (
    (30, 80.0, "negative", "high", "very new"),
    (90, 60.0, "negative", "medium", "new"),
    (365, 40.0, "negative", "medium", "recent"),
    (730, 20.0, "positive", "low", "established"),
)
_MATURE = (5.0, "positive", "low", "mature")

_SUSPICIOUS_STATUSES = ("client hold", "server hold", "redemption period", "pending delete")
SUSPICIOUS_STATUS_DANGER = 30.0


@dataclass
class RegistrationInfo:
    domain: str
    age_days: int | None = None
    registrar: str | None = None
    statuses: list[str] = field(default_factory=list)


def _age_text(days: int) -> str:
    if days < 365:
        return f"{days} days old"
    return f"{round(days / 365, 1)} years old"


def parse_rdap(domain: str, data: dict[str, Any], now: datetime | None = None) -> RegistrationInfo:
    now = now or datetime.now(timezone.utc)
    info = RegistrationInfo(domain=domain)

    for event in data.get("events") or []:
        action = str(event.get("eventAction") or "").lower()
        if "registration" in action and event.get("eventDate"):
            try:
                created = datetime.fromisoformat(str(event["eventDate"]).replace("Z", "+00:00"))
            except ValueError:
                break
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            days = int((now - created).total_seconds() // 86400)
            info.age_days = days if days >= 0 else None
            break

    for entity in data.get("entities") or []:
        if "registrar" not in (entity.get("roles") or []):
            continue
        # vcardArray: ["vcard", [["fn", {}, "text", "Example Registrar"], ...]]
        vcard = entity.get("vcardArray") or []
        for prop in (vcard[1] if len(vcard) > 1 else []):
            if len(prop) >= 4 and prop[0] == "fn" and prop[3]:
                info.registrar = str(prop[3])
                break
        break

    info.statuses = [str(s).lower() for s in data.get("status") or []]
    return info


def assess_registration(info: RegistrationInfo) -> SignalSuccess:
    factors: list[RiskFactor] = []

    if info.age_days is None:
        danger = UNKNOWN_AGE_DANGER
        confidence = UNKNOWN_AGE_CONFIDENCE
        factors.append(
            RiskFactor(
                type="neutral",
                code="registration-age-unknown",
                description=f"Registration date for {info.domain} could not be determined.",
                score=UNKNOWN_AGE_DANGER,
                severity="low",
            )
        )
    else:
        danger, kind, severity, word = _MATURE
        for limit, bucket_danger, bucket_kind, bucket_severity, bucket_word in _AGE_BUCKETS:
            if info.age_days < limit:
                danger, kind, severity, word = bucket_danger, bucket_kind, bucket_severity, bucket_word
                break
        confidence = KNOWN_AGE_CONFIDENCE
        factors.append(
            RiskFactor(
                type=kind,  # type: ignore[arg-type]
                code=f"registration-{word.replace(' ', '-')}",
                description=f"Domain is {word} ({_age_text(info.age_days)}).",
                score=danger,
                severity=severity,  # type: ignore[arg-type]
            )
        )

    flagged = [s for s in info.statuses if any(marker in s for marker in _SUSPICIOUS_STATUSES)]
    if flagged:
        danger += SUSPICIOUS_STATUS_DANGER
        factors.append(
            RiskFactor(
                type="negative",
                code="registration-suspicious-status",
                description=f"Domain has suspicious registry status: {', '.join(flagged)}.",
                score=SUSPICIOUS_STATUS_DANGER,
                severity="high",
            )
        )

    if info.registrar:
        confidence += 0.1
        factors.append(
            RiskFactor(
                type="neutral",
                code="registration-registrar",
                description=f"Registered through {info.registrar}.",
            )
        )

    return success(clamp_score(danger), confidence, factors)


class RdapAdapter:
    """Domain age from RDAP, queried for the registrable domain of the subject."""

    def __init__(self, *, endpoint: str = RDAP_URL, transport: httpx.BaseTransport | None = None):
        self.endpoint = endpoint
        self.transport = transport

    def lookup(self, subject: str, timeout: float) -> RegistrationInfo:
        domain = registrable_domain(hostname_of(subject))
        with upstream_errors(_SERVICE):
            with httpx.Client(timeout=timeout, follow_redirects=True, transport=self.transport) as client:
                res = client.get(
                    self.endpoint.format(domain=domain),
                    headers={"accept": "application/rdap+json, application/json"},
                )
        if res.status_code == 404:
            # Registries without RDAP answer 404 through the bootstrap service.
            return RegistrationInfo(domain=domain)
        check_response(res, _SERVICE)
        data = parse_json(res, _SERVICE)
        return parse_rdap(domain, data if isinstance(data, dict) else {})

    def analyze(self, subject: str, timeout: float) -> SignalSuccess:
        return assess_registration(self.lookup(subject, timeout))
