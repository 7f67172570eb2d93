from __future__ import annotations

from typing import Mapping

from .models import FailureKind, Signal, SignalFailure


class TrustScoreError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(TrustScoreError):
    """The subject was rejected before analysis (e.g. malformed URL)."""


class ConfigurationError(TrustScoreError):
    pass


class SignalError(TrustScoreError):
    """Raised by signal adapters; always converted to a SignalFailure by the orchestrator."""

    kind: FailureKind = FailureKind.UNEXPECTED
    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_failure(self) -> SignalFailure:
        return SignalFailure(kind=self.kind, message=self.message, retryable=self.retryable)


class SignalTimeout(SignalError):
    kind = FailureKind.TIMEOUT
    retryable = True


class SignalUnavailable(SignalError):
    kind = FailureKind.UNAVAILABLE
    retryable = True


class SignalAuthError(SignalError):
    kind = FailureKind.AUTH_ERROR


class SignalRateLimited(SignalError):
    kind = FailureKind.RATE_LIMITED
    retryable = True


class SignalUnexpectedError(SignalError):
    kind = FailureKind.UNEXPECTED


class CacheCapacityRejected(TrustScoreError):
    """An entry is larger than its namespace's whole capacity."""

    def __init__(self, namespace: str, size: int, capacity: int):
        super().__init__(f"entry of {size} bytes exceeds capacity of namespace {namespace!r} ({capacity} bytes)")
        self.namespace = namespace
        self.size = size
        self.capacity = capacity


class WarmingInProgress(TrustScoreError):
    pass


class AllSignalsFailed(TrustScoreError):
    def __init__(self, subject: str, failures: Mapping[Signal, SignalFailure]):
        kinds = ", ".join(f"{s.value}={f.kind.value}" for s, f in failures.items())
        super().__init__(f"every signal failed for {subject}: {kinds}")
        self.subject = subject
        self.failures = dict(failures)

    @property
    def retryable(self) -> bool:
        return any(f.retryable for f in self.failures.values())


def error_for_status(status_code: int, message: str) -> SignalError:
    """Map an upstream HTTP status to the signal error taxonomy."""
    if status_code in (401, 403):
        return SignalAuthError(message)
    if status_code == 429:
        return SignalRateLimited(message)
    if status_code in (408, 504):
        return SignalTimeout(message)
    if status_code >= 500:
        return SignalUnavailable(message)
    return SignalUnexpectedError(message)

