"""Tests for the distributed lock."""

import asyncio

import pytest

from depot.cache.memory import InMemoryCacheStore, ManualClock
from depot.distributed.lock import DistributedLock
from depot.errors import LockError


class TestDistributedLock:
    """Test acquisition, release and expiry."""

    async def test_acquire_returns_token(
        self, lock: DistributedLock, store: InMemoryCacheStore
    ) -> None:
        token = await lock.acquire("daily-report", ttl_ms=1000)
        assert token is not None
        assert await store.get("lock:daily-report") == token
        assert await lock.holder("daily-report") == token

    async def test_tokens_are_unique(self, lock: DistributedLock) -> None:
        first = await lock.acquire("a")
        second = await lock.acquire("b")
        assert first != second

    async def test_mutual_exclusion(self, lock: DistributedLock) -> None:
        """A held lock cannot be taken until it is released."""
        token = await lock.acquire("r", timeout_ms=0)
        assert token is not None
        assert await lock.acquire("r", timeout_ms=200) is None

        assert await lock.release("r", token)
        assert await lock.acquire("r", timeout_ms=0) is not None

    async def test_zero_timeout_makes_one_attempt(
        self, store: InMemoryCacheStore, clock: ManualClock
    ) -> None:
        attempts = 0

        async def sleep(seconds: float) -> None:
            nonlocal attempts
            attempts += 1

        lock = DistributedLock(store, retry_interval_ms=10, clock=clock, sleep=sleep)
        await store.set_if_absent("lock:r", "other", 5000)

        assert await lock.acquire("r", timeout_ms=0) is None
        assert attempts == 0

    async def test_wrong_token_cannot_release(
        self, lock: DistributedLock, store: InMemoryCacheStore
    ) -> None:
        token = await lock.acquire("r")
        assert not await lock.release("r", "someone-else")
        assert await store.get("lock:r") == token

    async def test_lock_expires(self, lock: DistributedLock, clock: ManualClock) -> None:
        """A crashed holder's lock is freed by its TTL."""
        stale = await lock.acquire("r", ttl_ms=1000)
        clock.advance(1.0)
        fresh = await lock.acquire("r", timeout_ms=0)
        assert fresh is not None

        # The stale holder must not release the new holder's lock
        assert not await lock.release("r", stale)
        assert await lock.holder("r") == fresh

    async def test_waiter_acquires_after_release(self, lock: DistributedLock) -> None:
        token = await lock.acquire("r")

        async def release_soon() -> None:
            await asyncio.sleep(0)
            await lock.release("r", token)

        waiter, _ = await asyncio.gather(lock.acquire("r", timeout_ms=1000), release_soon())
        assert waiter is not None

    async def test_hold_releases_on_exit(self, lock: DistributedLock) -> None:
        async with lock.hold("r") as handle:
            assert handle.acquired
            assert await lock.holder("r") == handle.token
        assert await lock.holder("r") is None

    async def test_hold_releases_on_error(self, lock: DistributedLock) -> None:
        with pytest.raises(RuntimeError):
            async with lock.hold("r"):
                raise RuntimeError("job failed")
        assert await lock.holder("r") is None

    async def test_hold_when_busy(self, lock: DistributedLock) -> None:
        token = await lock.acquire("r")
        async with lock.hold("r", timeout_ms=100) as handle:
            assert not handle.acquired
        assert await lock.holder("r") == token

    async def test_store_errors_raise_lock_error(
        self, lock: DistributedLock, store: InMemoryCacheStore
    ) -> None:
        store.fail_with("connection refused")
        with pytest.raises(LockError):
            await lock.acquire("r")
        with pytest.raises(LockError):
            await lock.release("r", "token")
        with pytest.raises(LockError):
            await lock.holder("r")
