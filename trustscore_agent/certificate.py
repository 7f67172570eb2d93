from __future__ import annotations

import socket
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from cryptography import x509

from .errors import SignalTimeout, SignalUnavailable
from .models import RiskFactor, SignalSuccess
from .signals import clamp_score, success
from .urls import hostname_of

logger = structlog.get_logger(__name__)

_CERT_TIME_FORMAT = "%b %d %H:%M:%S %Y %Z"

KNOWN_ISSUER_HINTS = (
    "let's encrypt",
    "digicert",
    "globalsign",
    "sectigo",
    "comodoca",
    "godaddy",
    "amazon",
    "google trust services",
    "cloudflare",
    "microsoft",
    "entrust",
    "identrust",
)

MIN_DANGER = 5.0
_DAYS_RECENT = 30


@dataclass
class CertificateInfo:
    hostname: str
    https: bool = True
    verified: bool = True
    verify_error: str | None = None
    issuer: str | None = None
    subject: str | None = None
    not_before: datetime | None = None
    not_after: datetime | None = None


def _rdn_text(rdns: Any) -> str:
    return ", ".join("=".join(x) for rdn in rdns or () for x in rdn)


def _cert_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, _CERT_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def certificate_info_from_der(hostname: str, der: bytes, *, verify_error: str | None = None) -> CertificateInfo:
    """Fields of a DER certificate read without trusting it."""
    cert = x509.load_der_x509_certificate(der)
    return CertificateInfo(
        hostname=hostname,
        verified=verify_error is None,
        verify_error=verify_error,
        issuer=cert.issuer.rfc4514_string() or None,
        subject=cert.subject.rfc4514_string() or None,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
    )


def _unverified_certificate(hostname: str, timeout: float, port: int, verify_error: str) -> CertificateInfo:
    """Handshake again with verification off to read the rejected certificate's fields."""
    unverified = CertificateInfo(hostname=hostname, verified=False, verify_error=verify_error)
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
                der = ssock.getpeercert(binary_form=True)
    except (ssl.SSLError, OSError) as e:
        logger.info("certificate_details_unavailable", hostname=hostname, error=str(e))
        return unverified
    if not der:
        return unverified
    try:
        return certificate_info_from_der(hostname, der, verify_error=verify_error)
    except ValueError as e:
        logger.info("certificate_details_unavailable", hostname=hostname, error=str(e))
        return unverified


def fetch_certificate(hostname: str, timeout: float, port: int = 443) -> CertificateInfo:
    """TLS handshake with full verification; a verification failure is data, not an error."""
    ctx = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
                cert = ssock.getpeercert() or {}
    except ssl.SSLCertVerificationError as e:
        return _unverified_certificate(hostname, timeout, port, e.verify_message or str(e))
    except (socket.timeout, TimeoutError) as e:
        raise SignalTimeout(f"TLS handshake with {hostname} timed out") from e
    except socket.gaierror as e:
        raise SignalUnavailable(f"cannot resolve {hostname}: {e}", retryable=False) from e
    except ConnectionRefusedError:
        return CertificateInfo(hostname=hostname, https=False, verified=False)
    except (ssl.SSLError, OSError) as e:
        raise SignalUnavailable(f"TLS handshake with {hostname} failed: {e}") from e

    return CertificateInfo(
        hostname=hostname,
        issuer=_rdn_text(cert.get("issuer")) or None,
        subject=_rdn_text(cert.get("subject")) or None,
        not_before=_cert_time(cert.get("notBefore")),
        not_after=_cert_time(cert.get("notAfter")),
    )


def _verification_factor(message: str) -> RiskFactor:
    text = message.lower()
    if "expired" in text:
        return RiskFactor(type="negative", code="certificate-expired", description="Certificate has expired.", score=40, severity="high")
    if "self-signed" in text or "self signed" in text:
        return RiskFactor(type="negative", code="certificate-self-signed", description="Certificate is self-signed.", score=50, severity="high")
    if "hostname mismatch" in text or "doesn't match" in text:
        return RiskFactor(
            type="negative",
            code="certificate-hostname-mismatch",
            description="Certificate does not match the requested domain.",
            score=35,
            severity="high",
        )
    return RiskFactor(
        type="negative",
        code="certificate-untrusted",
        description=f"Certificate could not be verified ({message}).",
        score=60,
        severity="high",
    )


def assess_certificate(info: CertificateInfo, now: datetime | None = None) -> SignalSuccess:
    now = now or datetime.now(timezone.utc)

    if not info.https:
        return success(
            70.0,
            0.8,
            [
                RiskFactor(
                    type="negative",
                    code="certificate-no-https",
                    description="Site does not accept HTTPS connections.",
                    score=70,
                    severity="high",
                )
            ],
        )

    factors: list[RiskFactor] = []
    if not info.verified:
        factors.append(_verification_factor(info.verify_error or "verification failed"))
    seen = {f.code for f in factors}

    if info.not_after is not None:
        days_left = (info.not_after - now).days
        if days_left < 0 and "certificate-expired" not in seen:
            factors.append(
                RiskFactor(type="negative", code="certificate-expired", description="Certificate has expired.", score=40, severity="high")
            )
        elif 0 <= days_left <= _DAYS_RECENT:
            factors.append(
                RiskFactor(
                    type="negative",
                    code="certificate-expiring",
                    description=f"Certificate expires soon ({days_left} days left).",
                    score=20,
                    severity="medium",
                )
            )

    if info.not_before is not None and (now - info.not_before).days <= _DAYS_RECENT:
        factors.append(
            RiskFactor(
                type="negative",
                code="certificate-recent",
                description="Certificate was issued within the last 30 days.",
                score=25,
                severity="medium",
            )
        )

    issuer = (info.issuer or "").strip()
    subject = (info.subject or "").strip()
    if issuer and subject and issuer == subject:
        if "certificate-self-signed" not in seen:
            factors.append(
                RiskFactor(
                    type="negative",
                    code="certificate-self-issued",
                    description="Certificate appears self-issued (issuer equals subject).",
                    score=50,
                    severity="high",
                )
            )
    # Issuer reputation only counts for a chain that validated.
    elif info.verified and issuer and any(hint in issuer.lower() for hint in KNOWN_ISSUER_HINTS):
        factors.append(
            RiskFactor(
                type="positive",
                code="certificate-trusted-ca",
                description="Certificate is issued by a commonly trusted public CA.",
            )
        )
    elif info.verified and issuer:
        factors.append(
            RiskFactor(
                type="negative",
                code="certificate-uncommon-issuer",
                description="Certificate issuer is uncommon.",
                score=15,
                severity="low",
            )
        )

    danger = sum(f.score for f in factors if f.type == "negative")
    confidence = 0.9 if info.verified else 0.8
    return success(clamp_score(danger, low=MIN_DANGER), confidence, factors)


class TlsCertificateAdapter:
    def __init__(self, port: int = 443):
        self.port = port

    def analyze(self, subject: str, timeout: float) -> SignalSuccess:
        hostname = hostname_of(subject)
        info = fetch_certificate(hostname, timeout, self.port)
        logger.debug("certificate_fetched", hostname=hostname, verified=info.verified, https=info.https)
        return assess_certificate(info)
