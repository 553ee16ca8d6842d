"""Cache layer.

Provides caching over a shared key-value store:
- CacheService facade with TTL-bounded entries and per-instance stats
- Tag index for bulk invalidation by entity dependency
- Explicit memoization wrappers with volatility-driven TTLs
- In-process LRU tier for hot memoized results
- Refresh-ahead reloads of entries that keep being read
"""

from depot.cache.invalidation import DependencyInvalidator
from depot.cache.keys import KeyBuilder
from depot.cache.local import LocalTier
from depot.cache.memoize import (
    MemoizationPolicy,
    MemoizeMode,
    Memoizer,
    Scenario,
    Volatility,
    memoize,
)
from depot.cache.memory import InMemoryCacheStore, ManualClock
from depot.cache.refresh import (
    EntryStats,
    RefreshAhead,
    RefreshPolicy,
    RefreshPriority,
    RefreshStatistics,
)
from depot.cache.service import CacheService, CacheStats, HealthReport, StoreInfo
from depot.cache.store import CacheStore, RedisCacheStore, close_redis, get_redis
from depot.cache.strategies import STRATEGIES, CacheStrategy, PreloadItem, StrategicCache
from depot.cache.tags import TagIndex

__all__ = [
    # Store
    "CacheStore",
    "RedisCacheStore",
    "InMemoryCacheStore",
    "ManualClock",
    "get_redis",
    "close_redis",
    # Service
    "CacheService",
    "CacheStats",
    "HealthReport",
    "StoreInfo",
    "KeyBuilder",
    "TagIndex",
    # Invalidation
    "DependencyInvalidator",
    # Memoization
    "LocalTier",
    "MemoizationPolicy",
    "MemoizeMode",
    "Memoizer",
    "Scenario",
    "Volatility",
    "memoize",
    # Refresh-ahead
    "EntryStats",
    "RefreshAhead",
    "RefreshPolicy",
    "RefreshPriority",
    "RefreshStatistics",
    # Strategies
    "STRATEGIES",
    "CacheStrategy",
    "PreloadItem",
    "StrategicCache",
]
