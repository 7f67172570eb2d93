from __future__ import annotations

import re
from urllib.parse import urlparse, urlunparse

from .errors import ValidationError

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+.-]*://")

# Second-level labels under which registrations happen one level deeper (example.co.uk).
_SECOND_LEVEL_SUFFIXES = {"co", "com", "net", "org", "gov", "ac", "edu"}


def normalize_url(raw: str) -> str:
    """Canonical http(s) URL for analysis; bare domains get https://."""
    value = (raw or "").strip()
    if not value:
        raise ValidationError("Please provide a URL.")

    if not _SCHEME_RE.match(value):
        value = "https://" + value

    parsed = urlparse(value)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValidationError("Please use an http(s) website URL.")
    try:
        hostname = parsed.hostname
    except ValueError:
        hostname = None
    if not hostname or "." not in hostname:
        raise ValidationError("Please enter a valid website domain.")

    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    return urlunparse(parsed._replace(scheme=parsed.scheme.lower(), netloc=netloc, path=path, fragment=""))


def hostname_of(url: str) -> str:
    hostname = urlparse(url if _SCHEME_RE.match(url) else "https://" + url).hostname
    if not hostname:
        raise ValidationError(f"No hostname in {url!r}.")
    return hostname.lower().rstrip(".")


def registrable_domain(hostname: str) -> str:
    """Best guess at the registered domain without a public-suffix list."""
    parts = [p for p in hostname.lower().split(".") if p]
    if len(parts) <= 2:
        return ".".join(parts)
    if len(parts[-1]) == 2 and parts[-2] in _SECOND_LEVEL_SUFFIXES:
        return ".".join(parts[-3:])
    return ".".join(parts[-2:])
