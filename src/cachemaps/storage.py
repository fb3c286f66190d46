"""
Storage primitives for cache maps.

Provides the entry records, the CacheMap protocol, PassiveExpiringCache
(lazy, access-time expiry) and HitTracker (windowed hit counting).
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Generic, Hashable, Mapping, Protocol, TypeVar

from .exceptions import KeyExpiredOrAbsent

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


# ============================================================================
# Entries - Internal data structures
# ============================================================================


@dataclass
class CacheEntry(Generic[V]):
    """Value plus absolute expiry timestamp."""

    value: V
    expire_at: float  # Unix timestamp, inf = never

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the entry has reached its deadline."""
        if now is None:
            now = time.time()
        return now >= self.expire_at

    def remaining(self) -> float:
        """Seconds left before expiry (negative once expired)."""
        return self.expire_at - time.time()


@dataclass
class RuleEntry(Generic[V]):
    """Value plus the bookkeeping a Rule is evaluated against."""

    value: V
    created_at: float
    total_hits: int = 0

    def age(self, now: float | None = None) -> float:
        """Get age of entry in seconds."""
        if now is None:
            now = time.time()
        return now - self.created_at


def resolve_expire_at(expire_at: float | None, ttl: float | None) -> float:
    """Turn the put-time expiry arguments into an absolute deadline."""
    if expire_at is not None and ttl is not None:
        raise ValueError("Pass either expire_at or ttl, not both")
    if ttl is not None:
        return time.time() + ttl
    if expire_at is None:
        return math.inf
    return expire_at


# ============================================================================
# CacheMap Protocol - Common interface for all variants
# ============================================================================


class CacheMap(Protocol):
    """
    Protocol shared by every cache map variant.

    Reads follow observe-and-reconcile semantics: `get` and `expired` may
    delete expired entries or reset hit windows as a side effect, so callers
    should assert on the state after the call, not only on its result.
    """

    def get(self, key: Any) -> Any | None:
        """Get value by key. Returns None if absent (or expired, variant-dependent)."""
        ...

    def set(self, key: Any, value: Any) -> None:
        """Replace the value of a live key. Raises KeyExpiredOrAbsent otherwise."""
        ...

    def remove(self, key: Any) -> None:
        """Delete key from every store. No-op if absent."""
        ...

    def expired(self, key: Any) -> bool:
        """Check if key is absent or expired."""
        ...

    def remove_expired(self) -> int:
        """Delete every expired key. Returns count of removed entries."""
        ...

    def snapshot(self) -> Mapping[Any, Any]:
        """Read-only view of the current values."""
        ...


def validate_cache_map(cache: Any) -> bool:
    """
    Validate that an object implements the CacheMap protocol (plus `put`).

    Returns:
        True if valid, False otherwise
    """
    required_methods = [
        "put",
        "get",
        "set",
        "remove",
        "expired",
        "remove_expired",
        "snapshot",
    ]
    return all(
        hasattr(cache, method) and callable(getattr(cache, method))
        for method in required_methods
    )


# ============================================================================
# PassiveExpiringCache - Lazy expiry on access
# ============================================================================


class PassiveExpiringCache(Generic[K, V]):
    """
    Thread-safe map whose entries expire at an absolute timestamp.

    Nothing runs in the background: expiry is only evaluated when a key is
    touched, and the touching caller pays for deleting it.

    Example:
        cache = PassiveExpiringCache()
        cache.put("session:1", token, ttl=30)
        cache.get("session:1")  # None once 30s have passed

    Attributes:
        _data: key -> CacheEntry
        _lock: re-entrant lock guarding _data
    """

    def __init__(self):
        self._data: dict[K, CacheEntry[V]] = {}
        self._lock = threading.RLock()

    def put(
        self,
        key: K,
        value: V,
        expire_at: float | None = None,
        *,
        ttl: float | None = None,
    ) -> None:
        """Store value until expire_at (or now + ttl). No expiry means forever."""
        entry = CacheEntry(value=value, expire_at=resolve_expire_at(expire_at, ttl))
        with self._lock:
            self._data[key] = entry

    def get(self, key: K) -> V | None:
        """Return value if key still live, otherwise drop it."""
        with self._lock:
            if self.expired(key):
                return None
            return self._data[key].value

    def set(self, key: K, value: V) -> None:
        """Replace the value of a live key, keeping its expiry."""
        with self._lock:
            if self.expired(key):
                raise KeyExpiredOrAbsent(key)
            self._data[key].value = value

    def remove(self, key: K) -> None:
        """Delete key from cache."""
        with self._lock:
            self._data.pop(key, None)

    def expired(self, key: K) -> bool:
        """
        Check if key is absent or expired.

        Deletes the entry when expiry is confirmed.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return True
            if entry.is_expired():
                del self._data[key]
                logger.debug(f"Expired on access: {key!r}")
                return True
            return False

    def remove_expired(self) -> int:
        """Remove expired entries. Returns count of removed entries."""
        with self._lock:
            now = time.time()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._data[key]
        if expired_keys:
            logger.debug(f"Removed {len(expired_keys)} expired entries")
        return len(expired_keys)

    def get_expire(self, key: K) -> float | None:
        """Raw expiry timestamp of key, without expiring it."""
        with self._lock:
            entry = self._data.get(key)
            return entry.expire_at if entry is not None else None

    def snapshot(self) -> Mapping[K, V]:
        """Read-only copy of key -> value."""
        with self._lock:
            return MappingProxyType(
                {key: entry.value for key, entry in self._data.items()}
            )

    def expiry_snapshot(self) -> Mapping[K, float]:
        """Read-only copy of key -> expiry timestamp."""
        with self._lock:
            return MappingProxyType(
                {key: entry.expire_at for key, entry in self._data.items()}
            )

    def clear(self) -> None:
        """Clear all cached data."""
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def lock(self):
        """Get the internal lock (for composite operations)."""
        return self._lock


# ============================================================================
# HitTracker - Windowed hit counter
# ============================================================================


class HitTracker(Generic[K]):
    """
    Per-key hit counter that resets every `interval` seconds.

    Built on PassiveExpiringCache: the stored value is the hit count and the
    expiry is the end of the current window, so a stale window simply reads
    as expired.
    """

    def __init__(self, interval: float = 1.0):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self._windows: PassiveExpiringCache[K, int] = PassiveExpiringCache()

    def _open_window(self, key: K, hits: int) -> None:
        self._windows.put(key, hits, ttl=self.interval)

    def record_hit(self, key: K) -> int:
        """Count one hit, starting a new window if the current one is stale."""
        with self._windows.lock:
            hits = self._windows.get(key)
            if hits is None:
                self._open_window(key, 1)
                return 1
            try:
                self._windows.set(key, hits + 1)
            except KeyExpiredOrAbsent:
                # Window closed between the read and the write
                self._open_window(key, 1)
                return 1
            return hits + 1

    def current_window_hits(self, key: K) -> int:
        """
        Hits in the current window without counting one.

        A stale or missing window reads as 0 and is replaced by a fresh one.
        """
        with self._windows.lock:
            hits = self._windows.get(key)
            if hits is None:
                self._open_window(key, 0)
                return 0
            return hits

    def reset(self, key: K) -> None:
        """Start a fresh, empty window for key."""
        self._open_window(key, 0)

    def remove(self, key: K) -> None:
        self._windows.remove(key)

    def clear(self) -> None:
        self._windows.clear()

    def snapshot(self) -> Mapping[K, int]:
        return self._windows.snapshot()

    def __len__(self) -> int:
        return len(self._windows)
