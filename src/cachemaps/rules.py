"""
Eviction rules for RuleDrivenCache.

A Rule replaces a fixed TTL with a predicate over an entry's hit statistics,
age and value. Rules must be pure: the cache calls them from caller threads
and from the background sweep, repeatedly and concurrently.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable


class Rule(ABC):
    """
    Base class for eviction rules.

    Example:
        class EvictColdEntries(Rule):
            def interval(self) -> float:
                return 5.0

            def expired(self, window_hits, total_hits, age, value) -> bool:
                return age > 60 and window_hits == 0
    """

    def interval(self) -> float:
        """Length of the hit window in seconds (when the window counter resets)."""
        return 1.0

    @abstractmethod
    def expired(
        self, window_hits: int, total_hits: int, age: float, value: Any
    ) -> bool:
        """
        Decide whether an entry should be removed.

        Args:
            window_hits: Reads in the current window (see interval())
            total_hits: Reads since the entry was put
            age: Seconds since the entry was put
            value: The stored value

        Returns:
            True if the entry has expired and should be deleted
        """
        ...


class FunctionRule(Rule):
    """Adapt a plain callable into a Rule."""

    def __init__(
        self,
        predicate: Callable[[int, int, float, Any], bool],
        interval: float = 1.0,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._predicate = predicate
        self._interval = interval

    def interval(self) -> float:
        return self._interval

    def expired(
        self, window_hits: int, total_hits: int, age: float, value: Any
    ) -> bool:
        return bool(self._predicate(window_hits, total_hits, age, value))


class MaxAgeRule(Rule):
    """Evict entries older than max_age seconds (a plain TTL)."""

    def __init__(self, max_age: float):
        self.max_age = max_age

    def expired(
        self, window_hits: int, total_hits: int, age: float, value: Any
    ) -> bool:
        return age >= self.max_age


class MaxHitsRule(Rule):
    """Evict entries once they have been read max_hits times."""

    def __init__(self, max_hits: int):
        self.max_hits = max_hits

    def expired(
        self, window_hits: int, total_hits: int, age: float, value: Any
    ) -> bool:
        return total_hits >= self.max_hits


class IdleRule(Rule):
    """
    Evict entries read fewer than min_hits times in the current window.

    Entries younger than grace seconds are kept so a fresh put is not evicted
    before it had a chance to be read.
    """

    def __init__(self, min_hits: int, grace: float = 0.0, interval: float = 1.0):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.min_hits = min_hits
        self.grace = grace
        self._interval = interval

    def interval(self) -> float:
        return self._interval

    def expired(
        self, window_hits: int, total_hits: int, age: float, value: Any
    ) -> bool:
        return age >= self.grace and window_hits < self.min_hits
