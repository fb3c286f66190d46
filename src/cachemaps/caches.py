"""
Cache maps with a background sweeper.

Provides:
- StagedSweepingCache: TTL entries swept a bounded stage of keys per tick
- RuleDrivenCache: entries evicted by a user-supplied Rule over hit statistics
"""

from __future__ import annotations

import logging
import threading
import time
from types import MappingProxyType
from typing import Generic, Hashable, Mapping, NamedTuple, TypeVar

from .exceptions import CacheExpiredError, KeyExpiredOrAbsent
from .rules import Rule
from .scheduler import SweepConfig, SweepJob
from .storage import CacheEntry, HitTracker, RuleEntry, resolve_expire_at

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


# ============================================================================
# Background sweeping - shared lifecycle for swept cache maps
# ============================================================================


class _BackgroundSweeping:
    """Lifecycle of the SweepJob owned by a cache instance."""

    _job: SweepJob
    _config: SweepConfig

    def start(self) -> None:
        """Start (or resume) the background sweep."""
        self._job.start()

    def stop(self) -> None:
        """Stop the background sweep. Entries are kept but no longer swept."""
        self._job.stop()

    @property
    def running(self) -> bool:
        return self._job.running

    @property
    def cache_expired(self) -> bool:
        """True once the whole-cache deadline passed and the data was cleared."""
        return self._job.expired

    @property
    def sweep_config(self) -> SweepConfig:
        return self._config

    def _ensure_open(self) -> None:
        """Refuse new data once the whole-cache deadline has passed."""
        if self._job.deadline_passed():
            raise CacheExpiredError(f"{type(self).__name__} has expired")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


# ============================================================================
# StagedSweepingCache - Incremental background expiry
# ============================================================================


class StagedSweepingCache(_BackgroundSweeping, Generic[K, V]):
    """
    Thread-safe TTL map swept in stages by a background job.

    Every `delay` seconds the sweeper visits the next `stage_size` keys and
    deletes the expired ones, wrapping around once it reaches the end. Reads
    never expire anything themselves, so an expired value stays readable until
    the sweeper gets to it.

    Example:
        cache = StagedSweepingCache(delay=0.01, stage_size=100)
        cache.put("quote:AAPL", quote, ttl=5)
        cache.get("quote:AAPL")  # may be stale for up to one sweep cycle
        cache.stop()
    """

    def __init__(
        self,
        delay: float = 0.001,
        stage_size: int = 10,
        expire_at: float | None = None,
        autostart: bool = True,
    ):
        """
        Initialize staged cache.

        Args:
            delay: Seconds between sweep ticks
            stage_size: Keys visited per tick
            expire_at: Optional Unix timestamp at which the whole cache expires
            autostart: Whether to start the background sweep immediately
        """
        self._config = SweepConfig(delay=delay, stage_size=stage_size)
        self._data: dict[K, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        # Keys of the current sweep cycle and the position reached in it
        self._stage_keys: list[K] = []
        self._stage_pos = 0
        self._job = SweepJob(
            type(self).__name__,
            self.sweep_stage,
            delay,
            expire_at=expire_at,
            on_expire=self.clear,
        )
        if autostart:
            self.start()

    def put(
        self,
        key: K,
        value: V,
        expire_at: float | None = None,
        *,
        ttl: float | None = None,
    ) -> None:
        """
        Store value until expire_at (or now + ttl). No expiry means forever.

        Raises:
            CacheExpiredError: The whole-cache deadline has passed
        """
        self._ensure_open()
        entry = CacheEntry(value=value, expire_at=resolve_expire_at(expire_at, ttl))
        with self._lock:
            self._data[key] = entry

    def get(self, key: K) -> V | None:
        """Return the stored value, even if expired but not yet swept."""
        with self._lock:
            entry = self._data.get(key)
            return entry.value if entry is not None else None

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
        """Check if key is absent or past its deadline. Never deletes."""
        with self._lock:
            entry = self._data.get(key)
            return entry is None or entry.is_expired()

    def remove_expired(self) -> int:
        """Remove every expired entry in one pass. Returns count removed."""
        with self._lock:
            now = time.time()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._data[key]
        return len(expired_keys)

    def sweep_stage(self) -> int:
        """
        Run one sweep tick over the next stage of keys.

        The first tick of a cycle copies the key list (O(N) under the lock);
        every other tick holds the lock for at most stage_size keys.

        Returns:
            Number of entries removed
        """
        with self._lock:
            if self._stage_pos >= len(self._stage_keys):
                # End of the cycle - restart from the beginning
                self._stage_keys = list(self._data)
                self._stage_pos = 0

            end = self._stage_pos + self._config.stage_size
            stage = self._stage_keys[self._stage_pos : end]
            self._stage_pos = end

            now = time.time()
            removed = 0
            for key in stage:
                entry = self._data.get(key)
                if entry is not None and entry.is_expired(now):
                    del self._data[key]
                    removed += 1

        if removed:
            logger.debug(f"Stage sweep removed {removed} of {len(stage)} keys")
        return removed

    def configure_sweep(
        self, delay: float | None = None, stage_size: int | None = None
    ) -> None:
        """Change the tick delay and/or stage size of the background sweep."""
        config = SweepConfig(
            delay=delay if delay is not None else self._config.delay,
            stage_size=(
                stage_size if stage_size is not None else self._config.stage_size
            ),
        )
        with self._lock:
            self._config = config
        if delay is not None:
            self._job.reschedule(delay)

    def get_expire(self, key: K) -> float | None:
        """Raw expiry timestamp of key."""
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
            self._stage_keys = []
            self._stage_pos = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ============================================================================
# RuleDrivenCache - Eviction by a pluggable Rule
# ============================================================================


class HitStats(NamedTuple):
    """Statistics a Rule sees for one entry."""

    window_hits: int
    total_hits: int
    age: float


class RuleDrivenCache(_BackgroundSweeping, Generic[K, V]):
    """
    Cache whose entries are evicted by a Rule instead of a TTL.

    Each entry tracks its creation time, its lifetime hit count and a windowed
    hit count (reset every rule.interval() seconds). The rule is evaluated over
    every key by a background job every `delay` seconds, and on every read.

    Reads update hit statistics, so a rule sees the effect of the reads that
    preceded it.

    Example:
        class HotOnly(Rule):
            def expired(self, window_hits, total_hits, age, value):
                return age > 10 and window_hits < 5

        cache = RuleDrivenCache(HotOnly())
        cache.put("page:/", html)
    """

    def __init__(
        self,
        rule: Rule,
        delay: float = 0.05,
        expire_at: float | None = None,
        evict_on_read: bool = True,
        autostart: bool = True,
    ):
        """
        Initialize rule-driven cache.

        Args:
            rule: Eviction rule, fixed for the lifetime of the cache
            delay: Seconds between background rule sweeps
            expire_at: Optional Unix timestamp at which the whole cache expires
            evict_on_read: Evaluate the rule before counting a read, returning
                None for an entry it judges expired. When False, reads always
                succeed and only the sweep evicts.
            autostart: Whether to start the background sweep immediately
        """
        self._rule = rule
        self._config = SweepConfig(delay=delay)
        self.evict_on_read = evict_on_read
        self._entries: dict[K, RuleEntry[V]] = {}
        self._hits: HitTracker[K] = HitTracker(rule.interval())
        self._lock = threading.RLock()
        self._job = SweepJob(
            type(self).__name__,
            self.remove_expired,
            delay,
            expire_at=expire_at,
            on_expire=self.clear,
        )
        if autostart:
            self.start()

    @property
    def rule(self) -> Rule:
        return self._rule

    def _evaluate(self, key: K, entry: RuleEntry[V]) -> bool:
        """Ask the rule about an entry without counting a hit."""
        window_hits = self._hits.current_window_hits(key)
        return self._rule.expired(
            window_hits, entry.total_hits, entry.age(), entry.value
        )

    def _delete(self, key: K) -> None:
        self._entries.pop(key, None)
        self._hits.remove(key)

    def put(self, key: K, value: V) -> None:
        """Store value with fresh statistics (no hits, age 0)."""
        self._ensure_open()
        with self._lock:
            self._entries[key] = RuleEntry(value=value, created_at=time.time())
            self._hits.reset(key)

    def get(self, key: K) -> V | None:
        """Return value and count the read. None if absent or evicted by the rule."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if self.evict_on_read and self._evaluate(key, entry):
                self._delete(key)
                logger.debug(f"Rule evicted on read: {key!r}")
                return None

            entry.total_hits += 1
            self._hits.record_hit(key)
            return entry.value

    def set(self, key: K, value: V) -> None:
        """Replace the value of a key the rule still considers live."""
        with self._lock:
            if self.expired(key):
                raise KeyExpiredOrAbsent(key)
            self._entries[key].value = value

    def remove(self, key: K) -> None:
        """Delete key and all of its statistics."""
        with self._lock:
            self._delete(key)

    def expired(self, key: K) -> bool:
        """Check if key is absent or judged expired by the rule. Never deletes."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return True
            return self._evaluate(key, entry)

    def remove_expired(self) -> int:
        """
        Evaluate the rule over every key and delete the expired ones.

        The lock is taken per key so callers are not blocked for a whole pass.
        A rule that raises is logged and the key is kept until the next pass.

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys = list(self._entries)

        removed = 0
        for key in keys:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                try:
                    is_expired = self._evaluate(key, entry)
                except Exception as e:
                    logger.error(
                        f"Rule evaluation failed for {key!r}, skipping: {e}",
                        exc_info=True,
                    )
                    continue
                if is_expired:
                    self._delete(key)
                    removed += 1

        if removed:
            logger.debug(f"Rule sweep removed {removed} of {len(keys)} keys")
        return removed

    def get_stats(self, key: K) -> HitStats | None:
        """Statistics the rule would see for key, without counting a hit."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return HitStats(
                window_hits=self._hits.current_window_hits(key),
                total_hits=entry.total_hits,
                age=entry.age(),
            )

    def configure_sweep(self, delay: float | None = None) -> None:
        """Change the delay between background rule sweeps."""
        if delay is None:
            return
        self._config = SweepConfig(delay=delay)
        self._job.reschedule(delay)

    def snapshot(self) -> Mapping[K, V]:
        """Read-only copy of key -> value."""
        with self._lock:
            return MappingProxyType(
                {key: entry.value for key, entry in self._entries.items()}
            )

    def clear(self) -> None:
        """Clear all cached data and statistics."""
        with self._lock:
            self._entries.clear()
            self._hits.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
