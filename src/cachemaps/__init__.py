"""
Self-expiring cache maps: lazy TTL, staged background sweeps, and rule-driven eviction.

Expose cache variants, eviction rules, and scheduler utilities under `cachemaps`.
"""

from .exceptions import CacheMapError, CacheExpiredError, KeyExpiredOrAbsent
from .storage import (
    CacheEntry,
    RuleEntry,
    CacheMap,
    PassiveExpiringCache,
    HitTracker,
    validate_cache_map,
)
from .rules import (
    Rule,
    FunctionRule,
    MaxAgeRule,
    MaxHitsRule,
    IdleRule,
)
from .scheduler import SweepConfig, SweepJob
from .caches import (
    StagedSweepingCache,
    RuleDrivenCache,
    HitStats,
)

# Aliases for shorter usage
PassiveCache = PassiveExpiringCache
StagedCache = StagedSweepingCache
RuleCache = RuleDrivenCache

__all__ = [
    "CacheMapError",
    "CacheExpiredError",
    "KeyExpiredOrAbsent",
    "CacheEntry",
    "RuleEntry",
    "CacheMap",
    "PassiveExpiringCache",
    "PassiveCache",
    "HitTracker",
    "validate_cache_map",
    "Rule",
    "FunctionRule",
    "MaxAgeRule",
    "MaxHitsRule",
    "IdleRule",
    "SweepConfig",
    "SweepJob",
    "StagedSweepingCache",
    "StagedCache",
    "RuleDrivenCache",
    "RuleCache",
    "HitStats",
]
