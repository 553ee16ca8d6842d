"""Refresh-ahead for cache-aside reads.

``RefreshAhead.get`` serves a key from the cache and loads it on a miss, the
way ``CacheService.get_or_set`` does. It also schedules a background reload
once ``threshold`` of the entry's TTL has elapsed, so keys that keep being
read are replaced before they expire and their readers rarely see a miss.

Reloads run when ``process_due`` is awaited, either directly or from the
polling loop started with ``start``. Each pass takes the due jobs by priority,
then by due time, up to ``max_concurrent`` of them; a semaphore keeps
overlapping passes under the same cap. One key is reloaded at most once per
``min_interval_seconds``.

Only a read or a write arms a reload, so entries nobody reads any more simply
expire. Per-key bookkeeping is an LRU bounded by ``max_entries``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from depot.cache.service import CacheService
from depot.config import settings
from depot.errors import CacheError
from depot.observability.metrics import record_refresh

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


class RefreshPriority(str, Enum):
    """Order of jobs that fall due in the same pass."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    RefreshPriority.HIGH: 0,
    RefreshPriority.MEDIUM: 1,
    RefreshPriority.LOW: 2,
}


@dataclass(frozen=True)
class RefreshPolicy:
    """When and how eagerly entries are reloaded.

    Attributes:
        enabled: Schedule reloads at all
        threshold: Fraction of the TTL after which a reload is due
        max_concurrent: Reloads allowed to run at the same time
        min_interval_seconds: Minimum time between two reloads of one key
        priority: Order among jobs due in the same pass
    """

    enabled: bool = True
    threshold: float = 0.7
    max_concurrent: int = 5
    min_interval_seconds: float = 60.0
    priority: RefreshPriority = RefreshPriority.MEDIUM

    def __post_init__(self) -> None:
        if not 0 < self.threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        if self.max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        if self.min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must not be negative")

    @classmethod
    def from_settings(cls) -> RefreshPolicy:
        return cls(
            enabled=settings.refresh_enabled,
            threshold=settings.refresh_threshold,
            max_concurrent=settings.refresh_max_concurrent,
            min_interval_seconds=settings.refresh_min_interval,
        )


@dataclass
class RefreshJob:
    """A scheduled reload of one cache entry."""

    full_key: str
    key: str
    prefix: str | None
    loader: Loader
    ttl: int
    tags: tuple[str, ...]
    priority: RefreshPriority
    due_at: float


@dataclass
class EntryStats:
    """Access and load history of one entry."""

    last_accessed: float
    written_at: float | None = None
    last_refresh: float | None = None
    access_count: int = 0
    hit_count: int = 0
    load_count: int = 0
    total_load_ms: float = 0.0

    @property
    def hit_rate(self) -> float:
        return self.hit_count / self.access_count if self.access_count else 0.0

    @property
    def avg_load_ms(self) -> float:
        return self.total_load_ms / self.load_count if self.load_count else 0.0


@dataclass(frozen=True)
class RefreshStatistics:
    """Snapshot of the refresh-ahead bookkeeping."""

    tracked_entries: int
    scheduled: int
    in_progress: int
    top_hit_rates: list[tuple[str, float]]
    slowest_loads: list[tuple[str, float]]
    queue: list[tuple[str, float]]


class RefreshAhead:
    """Cache-aside reads with background reloads before expiry."""

    def __init__(
        self,
        cache: CacheService,
        policy: RefreshPolicy | None = None,
        *,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        timer: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cache = cache
        self.policy = policy or RefreshPolicy.from_settings()
        self.max_entries = max_entries or settings.local_tier_max_size
        if self.max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._clock = clock
        self._timer = timer
        self._sleep = sleep

        self._entries: OrderedDict[str, EntryStats] = OrderedDict()
        self._jobs: dict[str, RefreshJob] = {}
        self._in_progress: set[str] = set()
        self._semaphore = asyncio.Semaphore(self.policy.max_concurrent)

        self._running = False
        self._runner: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _entry(self, full_key: str) -> EntryStats:
        entry = self._entries.get(full_key)
        if entry is None:
            entry = EntryStats(last_accessed=self._clock())
            self._entries[full_key] = entry
        self._entries.move_to_end(full_key)

        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._jobs.pop(evicted, None)
        return entry

    def entry(self, key: str, prefix: str | None = None) -> EntryStats | None:
        """Bookkeeping for ``key``, None if it is not tracked."""
        return self._entries.get(self.cache.keys.build(key, prefix))

    async def _load(self, full_key: str, loader: Loader) -> Any:
        start = self._timer()
        value = await loader()
        entry = self._entry(full_key)
        entry.load_count += 1
        entry.total_load_ms += (self._timer() - start) * 1000
        return value

    def _schedule(
        self,
        full_key: str,
        key: str,
        prefix: str | None,
        loader: Loader,
        ttl: int,
        tags: tuple[str, ...],
        policy: RefreshPolicy,
    ) -> None:
        if not policy.enabled or full_key in self._jobs or full_key in self._in_progress:
            return

        entry = self._entries.get(full_key)
        now = self._clock()
        written_at = entry.written_at if entry and entry.written_at is not None else now
        due_at = written_at + ttl * policy.threshold
        if entry and entry.last_refresh is not None:
            due_at = max(due_at, entry.last_refresh + policy.min_interval_seconds)

        self._jobs[full_key] = RefreshJob(
            full_key=full_key,
            key=key,
            prefix=prefix,
            loader=loader,
            ttl=ttl,
            tags=tags,
            priority=policy.priority,
            due_at=due_at,
        )
        logger.debug(
            "Refresh scheduled",
            extra={"key": full_key, "due_at": round(due_at, 3), "priority": policy.priority.value},
        )

    # -------------------------------------------------------------------------
    # Reads and writes
    # -------------------------------------------------------------------------

    async def get(
        self,
        key: str,
        loader: Loader,
        *,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        prefix: str | None = None,
        policy: RefreshPolicy | None = None,
    ) -> Any | None:
        """Read ``key`` through the cache, loading it on a miss.

        A hit arms the key's next reload. A miss loads the value, writes it
        with its tags and schedules the first reload. When the cache fails the
        loader's result is returned without caching.
        """
        policy = policy or self.policy
        ttl = ttl or self.cache.default_ttl
        tag_list = tuple(tags or ())
        full_key = self.cache.keys.build(key, prefix)

        entry = self._entry(full_key)
        entry.access_count += 1
        entry.last_accessed = self._clock()

        try:
            value = await self.cache.get(key, prefix=prefix)
        except CacheError as e:
            logger.warning(
                "Refresh-ahead lookup failed, loading directly",
                extra={"key": full_key, "error": str(e)},
            )
            return await self._load(full_key, loader)

        if value is not None:
            entry.hit_count += 1
            self._schedule(full_key, key, prefix, loader, ttl, tag_list, policy)
            return value

        value = await self._load(full_key, loader)
        if value is not None and await self._write(full_key, key, value, ttl, tag_list, prefix):
            self._schedule(full_key, key, prefix, loader, ttl, tag_list, policy)
        return value

    async def set(
        self,
        key: str,
        value: Any,
        loader: Loader,
        *,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        prefix: str | None = None,
        policy: RefreshPolicy | None = None,
    ) -> bool:
        """Write ``value`` and schedule its reload through ``loader``.

        Returns False if the cache failed (the failure is logged).
        """
        policy = policy or self.policy
        ttl = ttl or self.cache.default_ttl
        tag_list = tuple(tags or ())
        full_key = self.cache.keys.build(key, prefix)
        self._entry(full_key)

        if not await self._write(full_key, key, value, ttl, tag_list, prefix):
            return False
        self._schedule(full_key, key, prefix, loader, ttl, tag_list, policy)
        return True

    async def _write(
        self,
        full_key: str,
        key: str,
        value: Any,
        ttl: int,
        tags: tuple[str, ...],
        prefix: str | None,
    ) -> bool:
        try:
            await self.cache.set(key, value, ttl=ttl, tags=tags, prefix=prefix)
        except (CacheError, TypeError) as e:
            logger.error("Refresh-ahead write failed", extra={"key": full_key, "error": str(e)})
            return False

        entry = self._entries.get(full_key)
        if entry is not None:
            entry.written_at = self._clock()
        return True

    async def invalidate(self, key: str, prefix: str | None = None) -> bool:
        """Cancel the key's reload, forget its history and delete it.

        Returns False if the cache failed (the failure is logged).
        """
        full_key = self.cache.keys.build(key, prefix)
        self._jobs.pop(full_key, None)
        self._entries.pop(full_key, None)
        try:
            await self.cache.delete(key, prefix=prefix)
        except CacheError as e:
            logger.error(
                "Refresh-ahead invalidation failed", extra={"key": full_key, "error": str(e)}
            )
            return False
        return True

    async def force_refresh(
        self,
        key: str,
        loader: Loader,
        *,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        prefix: str | None = None,
    ) -> Any | None:
        """Reload ``key`` now and drop its scheduled reload.

        Raises:
            CacheUnavailable: The store failed.
            Exception: Whatever ``loader`` raised.
        """
        full_key = self.cache.keys.build(key, prefix)
        self._jobs.pop(full_key, None)

        value = await self._load(full_key, loader)
        if value is not None:
            await self.cache.set(key, value, ttl=ttl, tags=tags, prefix=prefix)

        entry = self._entry(full_key)
        entry.written_at = entry.last_refresh = self._clock()
        record_refresh("forced")
        logger.info("Forced refresh completed", extra={"key": full_key})
        return value

    # -------------------------------------------------------------------------
    # Background reloads
    # -------------------------------------------------------------------------

    async def process_due(self) -> int:
        """Run the reloads that are due, returning how many were started."""
        now = self._clock()
        due = sorted(
            (job for job in self._jobs.values() if job.due_at <= now),
            key=lambda job: (job.priority.rank, job.due_at),
        )[: self.policy.max_concurrent]
        if not due:
            return 0

        logger.info(
            "Processing refresh jobs",
            extra={"due": len(due), "queued": len(self._jobs)},
        )
        for job in due:
            del self._jobs[job.full_key]
            self._in_progress.add(job.full_key)

        await asyncio.gather(*(self._run(job) for job in due))
        return len(due)

    async def _run(self, job: RefreshJob) -> None:
        try:
            async with self._semaphore:
                value = await self._load(job.full_key, job.loader)
                if value is not None:
                    await self.cache.set(
                        job.key, value, ttl=job.ttl, tags=job.tags, prefix=job.prefix
                    )
        except Exception:
            record_refresh("failed")
            logger.exception("Background refresh failed", extra={"key": job.full_key})
            return
        finally:
            self._in_progress.discard(job.full_key)

        entry = self._entries.get(job.full_key)
        if entry is not None:
            entry.written_at = entry.last_refresh = self._clock()
        record_refresh("refreshed")
        logger.info(
            "Background refresh completed",
            extra={"key": job.full_key, "priority": job.priority.value},
        )

    async def start(self, poll_interval: float | None = None) -> None:
        """Start processing due reloads every ``poll_interval`` seconds."""
        if self._running:
            return

        interval = poll_interval or settings.refresh_poll_interval
        self._running = True
        self._runner = asyncio.create_task(self._poll(interval))
        logger.info(
            "Refresh-ahead started",
            extra={"poll_interval": interval, "max_concurrent": self.policy.max_concurrent},
        )

    async def stop(self) -> None:
        """Stop the polling loop. Reloads already running are cancelled."""
        self._running = False

        if self._runner:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None

        logger.info("Refresh-ahead stopped")

    async def _poll(self, interval: float) -> None:
        while self._running:
            try:
                await self._sleep(interval)
                await self.process_due()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Refresh pass failed", extra={"error": str(e)})

    # -------------------------------------------------------------------------
    # Policy and statistics
    # -------------------------------------------------------------------------

    def set_policy(self, **changes: Any) -> RefreshPolicy:
        """Replace fields of the default policy, returning the new one."""
        self.policy = dataclasses.replace(self.policy, **changes)
        if "max_concurrent" in changes:
            self._semaphore = asyncio.Semaphore(self.policy.max_concurrent)
        return self.policy

    def statistics(self, limit: int = 10) -> RefreshStatistics:
        entries = list(self._entries.items())
        top_hit_rates = sorted(
            ((key, entry.hit_rate) for key, entry in entries),
            key=lambda item: item[1],
            reverse=True,
        )[:limit]
        slowest_loads = sorted(
            ((key, entry.avg_load_ms) for key, entry in entries if entry.load_count),
            key=lambda item: item[1],
            reverse=True,
        )[:limit]
        queue = sorted(
            ((job.full_key, job.due_at) for job in self._jobs.values()),
            key=lambda item: item[1],
        )
        return RefreshStatistics(
            tracked_entries=len(entries),
            scheduled=len(self._jobs),
            in_progress=len(self._in_progress),
            top_hit_rates=top_hit_rates,
            slowest_loads=slowest_loads,
            queue=queue,
        )
