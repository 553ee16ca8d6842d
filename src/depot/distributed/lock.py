"""Distributed mutual exclusion over the shared cache store.

A lock is a ``lock:{resource}`` record holding the token of the current
holder, written with SET NX PX so it always expires:

    UNLOCKED -> (acquire) -> LOCKED(token) -> (matching release | TTL) -> UNLOCKED

Only the token returned by ``acquire`` can release the lock. Release is a
single server-side compare-and-delete script, so a holder whose lease has
already expired can never delete a lock re-acquired by someone else.

Example:
    lock = DistributedLock(store)

    token = await lock.acquire("daily-report", ttl_ms=30000, timeout_ms=5000)
    if token is None:
        # Someone else holds it, retry later
        return
    try:
        await build_report()
    finally:
        await lock.release("daily-report", token)

    # Or as a context manager
    async with lock.hold("daily-report") as handle:
        if handle.acquired:
            await build_report()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

from depot.cache import scripts
from depot.cache.keys import KeyBuilder
from depot.cache.store import CacheStore
from depot.config import settings
from depot.errors import LockError, StoreError
from depot.observability.metrics import record_lock_acquisition

logger = logging.getLogger(__name__)


def _generate_token() -> str:
    """Unique token for one acquisition attempt."""
    return f"{int(time.time() * 1000)}-{uuid4().hex}"


@dataclass(frozen=True)
class LockHandle:
    """Result of a ``hold`` block: the token if the lock was acquired."""

    resource: str
    token: str | None

    @property
    def acquired(self) -> bool:
        return self.token is not None


class DistributedLock:
    """Named lock shared by every process using the same store.

    Args:
        store: Backing store shared by all participants
        retry_interval_ms: Pause between acquisition attempts
        clock: Monotonic clock in seconds, used for the acquire timeout
        sleep: Coroutine used to wait between attempts
    """

    def __init__(
        self,
        store: CacheStore,
        retry_interval_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.retry_interval_ms = retry_interval_ms or settings.lock_retry_interval_ms
        self._clock = clock
        self._sleep = sleep

    async def acquire(
        self,
        resource: str,
        ttl_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> str | None:
        """Acquire the lock, polling until ``timeout_ms`` elapses.

        At least one attempt is made even with a zero timeout.

        Returns:
            The holder token, or None if the lock stayed taken until timeout.

        Raises:
            LockError: The store failed while polling.
        """
        ttl_ms = ttl_ms or settings.lock_default_ttl_ms
        if timeout_ms is None:
            timeout_ms = settings.lock_default_timeout_ms

        lock_key = KeyBuilder.lock(resource)
        token = _generate_token()
        deadline = self._clock() + timeout_ms / 1000
        interval = self.retry_interval_ms / 1000

        while True:
            try:
                acquired = await self.store.set_if_absent(lock_key, token, ttl_ms)
            except StoreError as e:
                record_lock_acquisition("error")
                logger.error(
                    "Lock acquisition error",
                    extra={"resource": resource, "error": str(e)},
                )
                raise LockError(f"Failed to acquire lock for resource: {resource}", lock_key) from e

            if acquired:
                record_lock_acquisition("acquired")
                logger.info(
                    "Lock acquired",
                    extra={"resource": resource, "token": token, "ttl_ms": ttl_ms},
                )
                return token

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(interval, remaining))

        record_lock_acquisition("timeout")
        logger.warning(
            "Lock acquisition timeout",
            extra={"resource": resource, "timeout_ms": timeout_ms},
        )
        return None

    async def release(self, resource: str, token: str) -> bool:
        """Release the lock if ``token`` is the current holder.

        Returns:
            True if the lock was deleted, False if the token did not match
            (the lock is left untouched).

        Raises:
            LockError: The store failed while releasing.
        """
        lock_key = KeyBuilder.lock(resource)
        try:
            result = await self.store.eval(scripts.RELEASE_LOCK, [lock_key], [token])
        except StoreError as e:
            logger.error(
                "Lock release error",
                extra={"resource": resource, "token": token, "error": str(e)},
            )
            raise LockError(f"Failed to release lock for resource: {resource}", lock_key) from e

        released = int(result) == 1
        if released:
            logger.info("Lock released", extra={"resource": resource, "token": token})
        else:
            logger.warning(
                "Lock release failed - value mismatch",
                extra={"resource": resource, "token": token},
            )
        return released

    async def holder(self, resource: str) -> str | None:
        """Token of the current holder, None if unlocked."""
        try:
            return await self.store.get(KeyBuilder.lock(resource))
        except StoreError as e:
            raise LockError(f"Failed to read lock for resource: {resource}") from e

    @asynccontextmanager
    async def hold(
        self,
        resource: str,
        ttl_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> AsyncIterator[LockHandle]:
        """Acquire for the duration of the block, releasing on exit.

        The block runs even when the lock could not be taken; check
        ``handle.acquired``.
        """
        token = await self.acquire(resource, ttl_ms=ttl_ms, timeout_ms=timeout_ms)
        try:
            yield LockHandle(resource=resource, token=token)
        finally:
            if token is not None:
                await self.release(resource, token)
