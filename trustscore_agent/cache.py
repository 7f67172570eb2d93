"""
Bounded in-process cache with one namespace per signal.

Each namespace combines TTL expiry (lazy, discovered on lookup), LRU eviction
driven by an estimated byte size per entry, and hit/miss/eviction accounting.
Namespaces are plain objects: the orchestrator receives them at construction.
"""
from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterator

import structlog
from pydantic import BaseModel

from .config import AnalysisConfig, NamespaceConfig
from .errors import CacheCapacityRejected
from .models import SIGNAL_ORDER, CacheKey, Signal

logger = structlog.get_logger(__name__)

_FALLBACK_SIZE = 1024

Clock = Callable[[], float]
Sizer = Callable[[Any], int]


def estimate_size(value: Any) -> int:
    """Approximate memory footprint: serialized length x2 for object overhead."""
    try:
        if isinstance(value, BaseModel):
            text = value.model_dump_json()
        elif isinstance(value, (bytes, bytearray)):
            return len(value)
        elif isinstance(value, str):
            text = value
        else:
            text = json.dumps(value, default=str)
    except (TypeError, ValueError) as e:
        logger.warning("cache_size_estimate_failed", error=str(e), fallback=_FALLBACK_SIZE)
        return _FALLBACK_SIZE
    return len(text.encode("utf-8")) * 2


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    expires_at: float
    last_accessed_at: float
    size_estimate: int

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CacheStats:
    namespace: str
    hits: int
    misses: int
    hit_ratio: float
    current_bytes: int
    capacity: int
    evictions: int
    expirations: int
    entries: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "hits": self.hits,
            "misses": self.misses,
            "hit_ratio": self.hit_ratio,
            "current_bytes": self.current_bytes,
            "capacity": self.capacity,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "entries": self.entries,
        }


class CacheNamespace:
    """Thread-safe TTL + LRU store bounded by estimated bytes.

    The OrderedDict is the recency index: least recently used first. Every
    operation that touches it, or the byte counter, holds ``self._lock``.
    """

    def __init__(
        self,
        name: str,
        config: NamespaceConfig,
        *,
        clock: Clock = time.monotonic,
        sizer: Sizer = estimate_size,
    ):
        self.name = name
        self.max_bytes = config.max_bytes
        self.eviction_threshold_ratio = config.eviction_threshold_ratio
        self.default_ttl = config.default_ttl
        self._clock = clock
        self._sizer = sizer
        self._entries: OrderedDict[Hashable, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._bytes = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        self._check_key(key)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(now):
                self._remove(key)
                self._expirations += 1
                self._misses += 1
                return default
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        self._check_key(key)
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        size = int(self._sizer(value))
        if size > self.max_bytes:
            logger.warning("cache_entry_rejected", namespace=self.name, size=size, capacity=self.max_bytes)
            raise CacheCapacityRejected(self.name, size, self.max_bytes)

        with self._lock:
            now = self._clock()
            if key in self._entries:
                self._remove(key)
            self._entries[key] = CacheEntry(
                value=value,
                inserted_at=now,
                expires_at=now + ttl,
                last_accessed_at=now,
                size_estimate=size,
            )
            self._bytes += size
            if self._bytes > self.max_bytes:
                self._make_room(protect=key, now=now)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0

    def purge_expired(self) -> int:
        """Drop every expired entry now instead of waiting for lookups to find them."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._expirations += len(expired)
            return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            return CacheStats(
                namespace=self.name,
                hits=self._hits,
                misses=self._misses,
                hit_ratio=(self._hits / lookups) if lookups else 0.0,
                current_bytes=self._bytes,
                capacity=self.max_bytes,
                evictions=self._evictions,
                expirations=self._expirations,
                entries=len(self._entries),
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = self._misses = self._evictions = self._expirations = 0

    def keys(self) -> list[Hashable]:
        """Keys in recency order, least recently used first."""
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self.keys())

    def _check_key(self, key: Hashable) -> None:
        if isinstance(key, CacheKey) and key.namespace != self.name:
            raise ValueError(f"key for namespace {key.namespace!r} used with namespace {self.name!r}")

    def _remove(self, key: Hashable) -> CacheEntry:
        entry = self._entries.pop(key)
        self._bytes -= entry.size_estimate
        return entry

    def _make_room(self, *, protect: Hashable, now: float) -> None:
        # ``protect`` is never evicted: a lone entry between target and
        # max_bytes leaves usage above target.
        target = self.eviction_threshold_ratio * self.max_bytes

        # Expired entries go first.
        for key in [k for k, e in self._entries.items() if k != protect and e.is_expired(now)]:
            self._remove(key)
            self._expirations += 1

        if self._bytes <= target:
            return

        # Equal access times fall back to earliest insertion, then recency-index position.
        order = {k: i for i, k in enumerate(self._entries)}
        victims = sorted(
            (k for k in self._entries if k != protect),
            key=lambda k: (self._entries[k].last_accessed_at, self._entries[k].inserted_at, order[k]),
        )
        for key in victims:
            if self._bytes <= target:
                break
            entry = self._remove(key)
            self._evictions += 1
            logger.debug(
                "cache_evicted",
                namespace=self.name,
                size=entry.size_estimate,
                current_bytes=self._bytes,
                capacity=self.max_bytes,
            )


def build_namespaces(
    config: AnalysisConfig | None = None,
    *,
    clock: Clock = time.monotonic,
    sizer: Sizer = estimate_size,
) -> dict[Signal, CacheNamespace]:
    """One independent namespace per signal, sized and aged from the config."""
    config = config or AnalysisConfig()
    return {
        signal: CacheNamespace(signal.value, config.namespace_config(signal), clock=clock, sizer=sizer)
        for signal in SIGNAL_ORDER
    }
