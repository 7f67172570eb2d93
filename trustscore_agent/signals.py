from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Protocol, Union, runtime_checkable

import httpx

from .errors import SignalTimeout, SignalUnavailable, SignalUnexpectedError, error_for_status
from .models import RiskFactor, SignalFailure, SignalSuccess

SignalOutcome = Union[SignalSuccess, SignalFailure]


@runtime_checkable
class SignalAdapter(Protocol):
    """One signal's client. May raise SignalError; must tolerate being abandoned mid-call."""

    def analyze(self, subject: str, timeout: float) -> SignalOutcome: ...


AdapterLike = Union[SignalAdapter, Callable[[str, float], SignalOutcome]]


def clamp_score(score: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, float(score)))


def success(danger: float, confidence: float, factors: Iterable[RiskFactor] = ()) -> SignalSuccess:
    return SignalSuccess(
        danger_score=clamp_score(danger),
        confidence=max(0.0, min(1.0, float(confidence))),
        risk_factors=tuple(factors),
    )


@contextmanager
def upstream_errors(service: str) -> Iterator[None]:
    """Translate httpx transport failures into the signal error taxonomy."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise SignalTimeout(f"{service} timed out") from e
    except httpx.TransportError as e:
        raise SignalUnavailable(f"{service} is unreachable: {e}") from e


def check_response(res: httpx.Response, service: str) -> None:
    if res.is_success:
        return
    raise error_for_status(res.status_code, f"{service} returned HTTP {res.status_code}")


def parse_json(res: httpx.Response, service: str) -> Any:
    try:
        return res.json()
    except ValueError as e:
        raise SignalUnexpectedError(f"{service} returned invalid JSON") from e
