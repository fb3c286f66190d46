"""
Exceptions raised by cache maps.
"""

from __future__ import annotations

from typing import Any


class CacheMapError(Exception):
    """Base class for cache map errors."""


class KeyExpiredOrAbsent(CacheMapError, KeyError):
    """Raised by `set` when the key does not exist or has expired."""

    def __init__(self, key: Any):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"Key does not exist or has expired: {self.key!r}"


class CacheExpiredError(CacheMapError):
    """Raised by `put` once the whole cache has passed its expiry deadline."""
