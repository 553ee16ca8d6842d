"""Runtime wiring for the cache layer.

Whether caching is available is decided once, at startup. ``init_cache``
probes the configured store; afterwards ``get_cache`` returns the resolved
``CacheService`` or None without probing again, and callers branch on that.
"""

from __future__ import annotations

import logging

from depot.cache.memory import InMemoryCacheStore
from depot.cache.service import CacheService
from depot.cache.store import CacheStore, RedisCacheStore, close_redis, get_redis
from depot.config import Settings, settings
from depot.distributed.lock import DistributedLock
from depot.errors import StoreError

logger = logging.getLogger(__name__)

_cache: CacheService | None = None
_store: CacheStore | None = None
_resolved = False


async def create_store(config: Settings = settings) -> CacheStore:
    """Create a cache store based on configuration."""
    backend = config.cache_backend.lower()

    if backend in {"memory", "inmemory", "in_memory"}:
        return InMemoryCacheStore()

    if backend == "redis":
        return RedisCacheStore(await get_redis(config.redis_url))

    raise ValueError("Unsupported cache_backend. Supported values: memory, redis.")


def create_cache_service(store: CacheStore, config: Settings = settings) -> CacheService:
    """Build a CacheService on ``store`` with the configured policy."""
    return CacheService(
        store,
        key_prefix=config.cache_key_prefix,
        default_ttl=config.cache_default_ttl,
        atomic_invalidation=config.cache_atomic_invalidation,
        lock=DistributedLock(store, retry_interval_ms=config.lock_retry_interval_ms),
    )


async def close_store(store: CacheStore) -> None:
    """Close ``store``, including the shared Redis client if it uses one."""
    if isinstance(store, RedisCacheStore):
        await close_redis()
    else:
        await store.close()


async def init_cache(config: Settings = settings) -> CacheService | None:
    """Resolve the cache capability for this process.

    Returns None when caching is disabled or the store is unreachable; the
    outcome is kept until ``shutdown_cache``.
    """
    global _cache, _store, _resolved
    if _resolved:
        return _cache

    if not config.cache_enabled:
        logger.info("Caching disabled by configuration")
        _resolved = True
        return None

    store = await create_store(config)
    try:
        await store.ping()
    except StoreError as e:
        logger.warning("Cache store unreachable, running without cache", extra={"error": str(e)})
        await close_store(store)
        _resolved = True
        return None

    _store = store
    _cache = create_cache_service(store, config)
    _resolved = True
    logger.info(
        "Cache initialized",
        extra={"app": config.app_name, "store": type(store).__name__},
    )
    return _cache


def get_cache() -> CacheService | None:
    """The cache resolved by ``init_cache``, or None."""
    return _cache


async def shutdown_cache() -> None:
    """Close the store and forget the resolved capability."""
    global _cache, _store, _resolved
    if _store is not None:
        await close_store(_store)
        logger.info("Cache stopped (%s)", type(_store).__name__)
    _cache = None
    _store = None
    _resolved = False
