"""Cache facade: TTL caching, tag invalidation, locks and health.

``CacheService`` composes a ``KeyBuilder``, a ``CacheStore`` and a
``TagIndex``. It holds no durable state besides its in-memory statistics and
never serializes calls to the store; concurrent callers reach the store
independently.

Values are stored as strings: ``str`` values pass through unchanged, anything
else is encoded as JSON with orjson. On read, JSON is decoded when possible
and the raw string is returned otherwise.

Example:
    service = CacheService(RedisCacheStore(await get_redis()))

    await service.set("users:42", {"name": "Ana"}, ttl=60, tags=["users"])
    user = await service.get("users:42")

    report = await service.get_or_set("report:7", build_report, ttl=120)

    # After a write to any user
    await service.invalidate_by_tags(["users"])
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeVar
from uuid import uuid4

import orjson

from depot.cache.keys import KeyBuilder
from depot.cache.store import CacheStore
from depot.cache.tags import TagIndex
from depot.config import settings
from depot.errors import CacheUnavailable, StoreError
from depot.observability.metrics import (
    record_cache_error,
    record_cache_hit,
    record_cache_miss,
    record_cache_operation,
    record_invalidation,
)

if TYPE_CHECKING:
    from depot.distributed.lock import DistributedLock, LockHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[], None]

HEALTH_PROBE_TTL = 10


def serialize(value: Any) -> str:
    """Encode a value for storage. Strings are stored as-is."""
    if isinstance(value, str):
        return value
    return orjson.dumps(value).decode()


def deserialize(raw: str) -> Any:
    """Decode a stored value, falling back to the raw string."""
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return raw


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of one CacheService's counters."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    avg_latency_ms: float = 0.0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass(frozen=True)
class HealthReport:
    """Outcome of a store round-trip probe."""

    status: Literal["healthy", "unhealthy"]
    latency_ms: float | None = None
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


@dataclass(frozen=True)
class StoreInfo:
    """Operator view of the backing store."""

    connected: bool
    memory: str = "N/A"
    dbsize: int = 0
    error: str | None = None


class CacheService:
    """Public cache facade.

    Args:
        store: Backing store
        key_prefix: Application namespace for every cache key
        default_ttl: TTL in seconds when a write does not give one
        atomic_invalidation: Invalidate each tag with one server-side script
        lock: Distributed lock sharing the same store (created if None)
        clock: Clock used for latency statistics, in seconds
    """

    def __init__(
        self,
        store: CacheStore,
        key_prefix: str | None = None,
        default_ttl: int | None = None,
        atomic_invalidation: bool | None = None,
        lock: DistributedLock | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        if lock is None:
            from depot.distributed.lock import DistributedLock

            lock = DistributedLock(store)

        self.store = store
        self.keys = KeyBuilder(key_prefix or settings.cache_key_prefix)
        self.tags = TagIndex(store)
        self.lock = lock
        self.default_ttl = default_ttl or settings.cache_default_ttl
        self.atomic_invalidation = (
            settings.cache_atomic_invalidation
            if atomic_invalidation is None
            else atomic_invalidation
        )
        self._clock = clock
        self._reset_stats()

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def _reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._errors = 0
        self._latency_sum_ms = 0.0
        self._operation_count = 0

    def _finish(self, operation: str, start: float) -> float:
        """Record a completed operation's latency, returning it in ms."""
        elapsed = self._clock() - start
        latency_ms = elapsed * 1000
        self._operation_count += 1
        self._latency_sum_ms += latency_ms
        record_cache_operation(operation, elapsed)
        return latency_ms

    def _fail(self, operation: str, start: float, error: StoreError, **fields: Any) -> None:
        self._errors += 1
        latency_ms = self._finish(operation, start)
        record_cache_error(operation)
        logger.error(
            f"Cache {operation} error",
            extra={**fields, "error": str(error), "latency_ms": round(latency_ms, 3)},
        )

    def get_stats(self) -> CacheStats:
        """Return an immutable snapshot of the counters."""
        avg = self._latency_sum_ms / self._operation_count if self._operation_count else 0.0
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            sets=self._sets,
            deletes=self._deletes,
            errors=self._errors,
            avg_latency_ms=round(avg, 3),
        )

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    async def get(
        self,
        key: str,
        *,
        prefix: str | None = None,
        on_hit: Callback | None = None,
        on_miss: Callback | None = None,
    ) -> Any | None:
        """Read a value, returning None on miss.

        Raises:
            CacheUnavailable: The store failed.
        """
        full_key = self.keys.build(key, prefix)
        start = self._clock()

        try:
            raw = await self.store.get(full_key)
        except StoreError as e:
            self._fail("get", start, e, key=full_key)
            raise CacheUnavailable(f"Failed to get cache key {full_key}", full_key) from e

        latency_ms = self._finish("get", start)

        if raw is None:
            self._misses += 1
            record_cache_miss()
            if on_miss:
                on_miss()
            logger.debug("Cache miss", extra={"key": full_key, "latency_ms": round(latency_ms, 3)})
            return None

        self._hits += 1
        record_cache_hit()
        if on_hit:
            on_hit()
        logger.debug("Cache hit", extra={"key": full_key, "latency_ms": round(latency_ms, 3)})
        return deserialize(raw)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        prefix: str | None = None,
    ) -> None:
        """Write a value with a TTL and register it under ``tags``.

        The value is written before its tags; if the tag registration fails
        the entry stays untagged until its TTL expires.

        Raises:
            CacheUnavailable: The store failed.
            ValueError: ``ttl`` is not positive.
        """
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")
        ttl = ttl or self.default_ttl
        full_key = self.keys.build(key, prefix)
        tag_list = list(tags or ())
        payload = serialize(value)
        start = self._clock()

        try:
            await self.store.set(full_key, payload, ttl)
            if tag_list:
                await self.tags.add(full_key, tag_list, ttl)
        except StoreError as e:
            self._fail("set", start, e, key=full_key)
            raise CacheUnavailable(f"Failed to set cache key {full_key}", full_key) from e

        self._sets += 1
        latency_ms = self._finish("set", start)
        logger.debug(
            "Cache set",
            extra={
                "key": full_key,
                "ttl": ttl,
                "tags": tag_list,
                "latency_ms": round(latency_ms, 3),
            },
        )

    async def delete(self, key: str, prefix: str | None = None) -> bool:
        """Delete a key, returning whether it existed.

        Raises:
            CacheUnavailable: The store failed.
        """
        full_key = self.keys.build(key, prefix)
        start = self._clock()

        try:
            deleted = await self.store.delete(full_key)
        except StoreError as e:
            self._fail("delete", start, e, key=full_key)
            raise CacheUnavailable(f"Failed to delete cache key {full_key}", full_key) from e

        self._deletes += 1
        latency_ms = self._finish("delete", start)
        logger.debug(
            "Cache delete",
            extra={"key": full_key, "found": deleted > 0, "latency_ms": round(latency_ms, 3)},
        )
        return deleted > 0

    async def get_or_set(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        prefix: str | None = None,
        on_hit: Callback | None = None,
        on_miss: Callback | None = None,
    ) -> T:
        """Return the cached value, computing and storing it on a miss.

        Concurrent misses on the same key are not de-duplicated: every caller
        runs ``compute`` and writes, and the last write wins. Use
        ``get_or_set_locked`` when only one computation may be in flight.
        A ``None`` result is returned but not stored.
        """
        cached = await self.get(key, prefix=prefix, on_hit=on_hit, on_miss=on_miss)
        if cached is not None:
            return cached  # type: ignore[no-any-return]

        value = await compute()
        if value is not None:
            await self.set(key, value, ttl=ttl, tags=tags, prefix=prefix)
        return value

    async def get_or_set_locked(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        prefix: str | None = None,
        lock_ttl_ms: int | None = None,
        lock_timeout_ms: int | None = None,
    ) -> T:
        """Stampede-safe ``get_or_set``.

        On a miss the caller locks ``cache:{full_key}``. The lock holder
        re-checks the cache, computes and writes; waiting callers acquire
        the lock in turn and find the value already cached. A caller whose
        lock wait times out re-checks once more and then computes without
        protection, so a slow holder delays callers but never fails them.

        Raises:
            CacheUnavailable: The store failed during a read or write.
            LockError: The store failed while locking.
        """
        cached = await self.get(key, prefix=prefix)
        if cached is not None:
            return cached  # type: ignore[no-any-return]

        resource = f"cache:{self.keys.build(key, prefix)}"
        async with self.lock.hold(resource, ttl_ms=lock_ttl_ms, timeout_ms=lock_timeout_ms) as handle:
            cached = await self.get(key, prefix=prefix)
            if cached is not None:
                return cached  # type: ignore[no-any-return]

            if not handle.acquired:
                logger.warning(
                    "Computing without single-flight protection",
                    extra={"key": self.keys.build(key, prefix), "resource": resource},
                )

            value = await compute()
            if value is not None:
                await self.set(key, value, ttl=ttl, tags=tags, prefix=prefix)
            return value

    # -------------------------------------------------------------------------
    # Bulk operations
    # -------------------------------------------------------------------------

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every key registered under any of ``tags``.

        For each tag the member keys are deleted before the tag index. Returns
        the total number of keys actually removed.

        Raises:
            CacheUnavailable: The store failed.
        """
        tag_list = list(tags)
        start = self._clock()
        deleted = 0

        try:
            for tag in tag_list:
                deleted += await self.tags.invalidate(tag, atomic=self.atomic_invalidation)
        except StoreError as e:
            self._fail("invalidate", start, e, tags=tag_list)
            raise CacheUnavailable(
                f"Failed to invalidate cache by tags: {', '.join(tag_list)}"
            ) from e

        latency_ms = self._finish("invalidate", start)
        record_invalidation(deleted)
        logger.info(
            "Cache invalidation by tags",
            extra={"tags": tag_list, "deleted": deleted, "latency_ms": round(latency_ms, 3)},
        )
        return deleted

    async def keys_in(self, prefix: str | None = None) -> list[str]:
        """Logical keys currently cached under ``prefix`` (or the whole namespace).

        Raises:
            CacheUnavailable: The store failed.
        """
        try:
            found = await self.store.keys(self.keys.pattern(prefix))
        except StoreError as e:
            self._errors += 1
            raise CacheUnavailable("Failed to list cache keys") from e

        logical = (self.keys.parse(full_key, prefix) for full_key in found)
        return sorted(key for key in logical if key is not None)

    async def purge(self, prefix: str | None = None) -> int:
        """Delete every key under ``prefix`` (or the whole namespace).

        Unlike ``clear`` this leaves other namespaces and the statistics
        alone. Tag sets are not touched; stale members are harmless.

        Raises:
            CacheUnavailable: The store failed.
        """
        start = self._clock()
        try:
            found = await self.store.keys(self.keys.pattern(prefix))
            deleted = await self.store.delete(*found) if found else 0
        except StoreError as e:
            self._fail("purge", start, e, prefix=prefix)
            raise CacheUnavailable(f"Failed to purge cache prefix {prefix}") from e

        self._finish("purge", start)
        logger.info("Cache purged", extra={"prefix": prefix, "deleted": deleted})
        return deleted

    async def clear(self) -> None:
        """Flush the whole backing store and reset statistics.

        This is an administrative action: every key in the store's database
        is removed, not just this service's namespace.

        Raises:
            CacheUnavailable: The store failed.
        """
        start = self._clock()
        try:
            await self.store.flush()
        except StoreError as e:
            self._errors += 1
            record_cache_error("clear")
            logger.error("Cache clear error", extra={"error": str(e)})
            raise CacheUnavailable("Failed to clear cache") from e

        self._reset_stats()
        latency_ms = (self._clock() - start) * 1000
        logger.warning("Cache cleared", extra={"latency_ms": round(latency_ms, 3)})

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def health_check(self) -> HealthReport:
        """Round-trip a probe value through the store. Never raises."""
        probe_key = self.keys.build(f"health:check:{uuid4().hex}")
        probe_value = str(time.time())
        start = time.perf_counter()

        try:
            await self.store.set(probe_key, probe_value, HEALTH_PROBE_TTL)
            retrieved = await self.store.get(probe_key)
            await self.store.delete(probe_key)
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            return HealthReport(
                status="unhealthy", latency_ms=round(latency_ms, 3), error=str(e) or type(e).__name__
            )

        latency_ms = (time.perf_counter() - start) * 1000
        if retrieved != probe_value:
            return HealthReport(status="unhealthy", error="Value mismatch in health check")
        return HealthReport(status="healthy", latency_ms=round(latency_ms, 3))

    async def store_info(self) -> StoreInfo:
        """Summarize the store (PING, INFO memory, DBSIZE). Never raises."""
        try:
            await self.store.ping()
            info = await self.store.info("memory")
            dbsize = await self.store.dbsize()
        except Exception as e:
            logger.error("Store info failed", extra={"error": str(e)})
            return StoreInfo(connected=False, error=str(e) or type(e).__name__)

        memory = str(info.get("used_memory_human", "N/A"))
        return StoreInfo(connected=True, memory=memory, dbsize=dbsize)

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    async def acquire_lock(
        self,
        resource: str,
        ttl_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> str | None:
        """Acquire ``lock:{resource}``; None means still held elsewhere at timeout."""
        return await self.lock.acquire(resource, ttl_ms=ttl_ms, timeout_ms=timeout_ms)

    async def release_lock(self, resource: str, token: str) -> bool:
        """Release ``lock:{resource}`` if ``token`` is its holder."""
        return await self.lock.release(resource, token)

    @asynccontextmanager
    async def locked(
        self,
        resource: str,
        ttl_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> AsyncIterator[LockHandle]:
        """Hold ``lock:{resource}`` for the duration of the block."""
        async with self.lock.hold(resource, ttl_ms=ttl_ms, timeout_ms=timeout_ms) as handle:
            yield handle
