"""Global pytest configuration and fixtures.

Provides the in-memory store, a manual clock and a cache service wired to
them, so unit tests never need a running Redis.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from depot import runtime
from depot.cache.memory import InMemoryCacheStore, ManualClock
from depot.cache.service import CacheService
from depot.distributed.lock import DistributedLock


@pytest.fixture
def clock() -> ManualClock:
    """Clock that only moves when a test advances it."""
    return ManualClock(start=1000.0)


@pytest.fixture
def store(clock: ManualClock) -> InMemoryCacheStore:
    """Fresh in-memory store on the manual clock."""
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def lock(store: InMemoryCacheStore, clock: ManualClock) -> DistributedLock:
    """Lock whose retries advance the manual clock instead of sleeping."""

    async def advance(seconds: float) -> None:
        clock.advance(seconds)
        await asyncio.sleep(0)

    return DistributedLock(store, retry_interval_ms=50, clock=clock, sleep=advance)


@pytest.fixture
def cache(store: InMemoryCacheStore, lock: DistributedLock) -> CacheService:
    """Cache service on the in-memory store."""
    return CacheService(
        store,
        key_prefix="wms",
        default_ttl=3600,
        atomic_invalidation=True,
        lock=lock,
    )


@pytest_asyncio.fixture
async def reset_runtime() -> AsyncIterator[None]:
    """Forget the process-wide cache before and after a test."""
    await runtime.shutdown_cache()
    yield
    await runtime.shutdown_cache()
