"""Tests for refresh-ahead reads and background reloads."""

import asyncio

import pytest

from depot.cache.memory import InMemoryCacheStore, ManualClock
from depot.cache.refresh import RefreshAhead, RefreshPolicy, RefreshPriority
from depot.cache.service import CacheService
from depot.errors import CacheUnavailable


class CountingLoader:
    """Loader returning an increasing version number."""

    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def __call__(self) -> int:
        self.calls += 1
        if self.fail:
            raise RuntimeError("database unavailable")
        return self.calls


@pytest.fixture
def refresher(cache: CacheService, clock: ManualClock) -> RefreshAhead:
    return RefreshAhead(cache, RefreshPolicy(min_interval_seconds=0), clock=clock)


class TestPolicy:
    """Test policy defaults and validation."""

    def test_defaults(self) -> None:
        policy = RefreshPolicy()
        assert policy.threshold == 0.7
        assert policy.max_concurrent == 5
        assert policy.min_interval_seconds == 60
        assert policy.priority is RefreshPriority.MEDIUM

    @pytest.mark.parametrize(
        "kwargs",
        [{"threshold": 0}, {"threshold": 1.5}, {"max_concurrent": 0}, {"min_interval_seconds": -1}],
    )
    def test_invalid_policy(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RefreshPolicy(**kwargs)

    def test_set_policy_replaces_fields(self, refresher: RefreshAhead) -> None:
        policy = refresher.set_policy(threshold=0.5, priority=RefreshPriority.HIGH)
        assert policy.threshold == 0.5
        assert refresher.policy.priority is RefreshPriority.HIGH
        with pytest.raises(ValueError):
            refresher.set_policy(max_concurrent=0)


class TestReads:
    """Test cache-aside reads and reload scheduling."""

    async def test_miss_loads_writes_and_schedules(
        self, refresher: RefreshAhead, cache: CacheService
    ) -> None:
        loader = CountingLoader()
        assert await refresher.get("sku:1", loader, ttl=100, tags=["products"]) == 1

        assert await cache.get("sku:1") == 1
        assert await cache.tags.members("products") == {"wms:sku:1"}
        assert refresher.statistics().queue == [("wms:sku:1", 1070.0)]

    async def test_hit_skips_loader(self, refresher: RefreshAhead) -> None:
        loader = CountingLoader()
        await refresher.get("sku:1", loader, ttl=100)
        assert await refresher.get("sku:1", loader, ttl=100) == 1

        assert loader.calls == 1
        entry = refresher.entry("sku:1")
        assert entry is not None
        assert (entry.access_count, entry.hit_count, entry.load_count) == (2, 1, 1)
        assert entry.hit_rate == 0.5

    async def test_none_is_not_cached_or_scheduled(
        self, refresher: RefreshAhead, store: InMemoryCacheStore
    ) -> None:
        async def nothing() -> None:
            return None

        assert await refresher.get("sku:1", nothing) is None
        assert await store.dbsize() == 0
        assert refresher.statistics().scheduled == 0

    async def test_cache_failure_falls_back_to_loader(
        self, refresher: RefreshAhead, store: InMemoryCacheStore
    ) -> None:
        store.fail_with("connection refused")
        loader = CountingLoader()
        assert await refresher.get("sku:1", loader, ttl=100) == 1
        assert refresher.statistics().scheduled == 0

    async def test_disabled_policy_never_schedules(self, refresher: RefreshAhead) -> None:
        policy = RefreshPolicy(enabled=False)
        await refresher.get("sku:1", CountingLoader(), ttl=100, policy=policy)
        assert refresher.statistics().scheduled == 0

    async def test_tracked_entries_are_bounded(
        self, cache: CacheService, clock: ManualClock
    ) -> None:
        """Bookkeeping for least recently used keys is dropped with their jobs."""
        refresher = RefreshAhead(cache, RefreshPolicy(), max_entries=3, clock=clock)
        for index in range(10):
            await refresher.get(f"sku:{index}", CountingLoader(), ttl=100)

        stats = refresher.statistics()
        assert stats.tracked_entries == 3
        assert [key for key, _ in stats.queue] == ["wms:sku:7", "wms:sku:8", "wms:sku:9"]


class TestBackgroundRefresh:
    """Test due-job processing."""

    async def test_reload_runs_once_threshold_has_passed(
        self, refresher: RefreshAhead, cache: CacheService, clock: ManualClock
    ) -> None:
        loader = CountingLoader()
        await refresher.get("sku:1", loader, ttl=100)

        clock.advance(69)
        assert await refresher.process_due() == 0

        clock.advance(1)
        assert await refresher.process_due() == 1
        assert await cache.get("sku:1") == 2
        assert refresher.statistics().scheduled == 0

        # The next read arms a reload relative to the refreshed write
        assert await refresher.get("sku:1", loader, ttl=100) == 2
        assert refresher.statistics().queue == [("wms:sku:1", 1140.0)]

    async def test_min_interval_delays_the_next_reload(
        self, cache: CacheService, clock: ManualClock
    ) -> None:
        refresher = RefreshAhead(cache, RefreshPolicy(min_interval_seconds=60), clock=clock)
        loader = CountingLoader()
        await refresher.get("sku:1", loader, ttl=10)

        clock.advance(7)
        assert await refresher.process_due() == 1

        await refresher.get("sku:1", loader, ttl=10)
        assert refresher.statistics().queue == [("wms:sku:1", 1067.0)]

    async def test_priority_then_due_time(
        self, cache: CacheService, clock: ManualClock
    ) -> None:
        refresher = RefreshAhead(
            cache, RefreshPolicy(max_concurrent=1, min_interval_seconds=0), clock=clock
        )
        low = RefreshPolicy(priority=RefreshPriority.LOW)
        high = RefreshPolicy(priority=RefreshPriority.HIGH)
        await refresher.set("slow", 1, CountingLoader(), ttl=10, policy=low)
        await refresher.set("urgent", 1, CountingLoader(), ttl=10, policy=high)

        clock.advance(10)
        assert await refresher.process_due() == 1
        assert [key for key, _ in refresher.statistics().queue] == ["wms:slow"]

    async def test_pass_is_capped_at_max_concurrent(
        self, cache: CacheService, clock: ManualClock
    ) -> None:
        refresher = RefreshAhead(
            cache, RefreshPolicy(max_concurrent=2, min_interval_seconds=0), clock=clock
        )
        for index in range(5):
            await refresher.set(f"sku:{index}", 0, CountingLoader(), ttl=10)

        clock.advance(10)
        assert await refresher.process_due() == 2
        assert refresher.statistics().scheduled == 3

    async def test_overlapping_passes_share_the_cap(
        self, cache: CacheService, clock: ManualClock
    ) -> None:
        """No more than ``max_concurrent`` loaders run even across passes."""
        refresher = RefreshAhead(
            cache, RefreshPolicy(max_concurrent=2, min_interval_seconds=0), clock=clock
        )
        gate = asyncio.Event()
        running = 0
        peak = 0

        async def slow_loader() -> str:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await gate.wait()
            running -= 1
            return "fresh"

        for index in range(4):
            await refresher.set(f"sku:{index}", "stale", slow_loader, ttl=10)
        clock.advance(10)

        first = asyncio.create_task(refresher.process_due())
        for _ in range(5):
            await asyncio.sleep(0)
        second = asyncio.create_task(refresher.process_due())
        for _ in range(5):
            await asyncio.sleep(0)

        assert refresher.statistics().in_progress == 4
        assert peak == 2

        gate.set()
        assert await first + await second == 4
        assert peak == 2
        assert await cache.get("sku:3") == "fresh"

    async def test_failed_reload_keeps_old_value(
        self, refresher: RefreshAhead, cache: CacheService, clock: ManualClock
    ) -> None:
        await refresher.set("sku:1", "old", CountingLoader(fail=True), ttl=100)
        clock.advance(70)

        assert await refresher.process_due() == 1
        assert await cache.get("sku:1") == "old"
        assert refresher.statistics().in_progress == 0

    async def test_polling_loop(self, cache: CacheService, clock: ManualClock) -> None:
        async def advance(seconds: float) -> None:
            clock.advance(seconds)
            await asyncio.sleep(0)

        refresher = RefreshAhead(
            cache, RefreshPolicy(min_interval_seconds=0), clock=clock, sleep=advance
        )
        loader = CountingLoader()
        await refresher.set("sku:1", 0, loader, ttl=10)

        await refresher.start(poll_interval=10)
        for _ in range(10):
            await asyncio.sleep(0)
        await refresher.stop()

        assert loader.calls == 1
        entry = refresher.entry("sku:1")
        assert entry is not None
        assert entry.last_refresh == 1010.0


class TestManualOperations:
    """Test set, invalidate, force_refresh and statistics."""

    async def test_set_failure_returns_false(
        self, refresher: RefreshAhead, store: InMemoryCacheStore
    ) -> None:
        store.fail_with("connection refused")
        assert not await refresher.set("sku:1", 1, CountingLoader())
        assert refresher.statistics().scheduled == 0

    async def test_invalidate_cancels_and_deletes(
        self, refresher: RefreshAhead, cache: CacheService
    ) -> None:
        await refresher.set("sku:1", 1, CountingLoader(), ttl=100)
        assert await refresher.invalidate("sku:1")

        assert await cache.get("sku:1") is None
        assert refresher.entry("sku:1") is None
        assert refresher.statistics().scheduled == 0

    async def test_invalidate_reports_store_failure(
        self, refresher: RefreshAhead, store: InMemoryCacheStore
    ) -> None:
        store.fail_with("connection refused")
        assert not await refresher.invalidate("sku:1")

    async def test_force_refresh(
        self, refresher: RefreshAhead, cache: CacheService, clock: ManualClock
    ) -> None:
        loader = CountingLoader()
        await refresher.set("sku:1", 0, loader, ttl=100)

        assert await refresher.force_refresh("sku:1", loader, ttl=100) == 1
        assert await cache.get("sku:1") == 1
        assert refresher.statistics().scheduled == 0
        entry = refresher.entry("sku:1")
        assert entry is not None
        assert entry.last_refresh == clock()

    async def test_force_refresh_propagates_errors(
        self, refresher: RefreshAhead, store: InMemoryCacheStore
    ) -> None:
        with pytest.raises(RuntimeError):
            await refresher.force_refresh("sku:1", CountingLoader(fail=True))

        store.fail_with("connection refused")
        with pytest.raises(CacheUnavailable):
            await refresher.force_refresh("sku:1", CountingLoader())

    async def test_statistics_rank_entries(self, cache: CacheService, clock: ManualClock) -> None:
        ticks = iter([0.0, 0.005, 0.010, 0.030])
        refresher = RefreshAhead(cache, RefreshPolicy(), clock=clock, timer=lambda: next(ticks))
        await refresher.get("hot", CountingLoader(), ttl=100)
        await refresher.get("hot", CountingLoader(), ttl=100)
        await refresher.get("hot", CountingLoader(), ttl=100)
        await refresher.get("cold", CountingLoader(), ttl=200)

        stats = refresher.statistics(limit=1)
        assert stats.tracked_entries == 2
        assert stats.top_hit_rates == [("wms:hot", pytest.approx(2 / 3))]
        assert stats.slowest_loads == [("wms:cold", pytest.approx(20.0))]
        assert [key for key, _ in stats.queue] == ["wms:hot", "wms:cold"]
