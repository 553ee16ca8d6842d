"""Backing-store contract for the cache layer.

Everything above this module (tag index, cache service, distributed lock)
talks to the remote key-value store only through ``CacheStore``. The Redis
implementation uses the redis-py async client with a shared connection pool.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar, cast

import redis.asyncio as redis
from redis.exceptions import RedisError

from depot.config import settings
from depot.errors import StoreError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Module-level connection pool
_redis_client: Redis | None = None


async def get_redis(url: str | None = None) -> Redis:
    """Get or create the Redis client.

    Uses connection pooling for efficient connection management. The socket
    timeouts are the only deadline applied to cache operations. ``url`` only
    matters for the call that creates the client.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            url or settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connect_timeout,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class CacheStore(ABC):
    """Small protocol over a remote key-value store.

    Values are strings; serialization is the caller's concern. Every write
    carries a TTL, there is no way to store an entry without expiry.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value stored under ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` expiring after ``ttl_seconds``."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Store ``value`` only if ``key`` does not exist. Returns True if written."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether ``key`` exists."""

    @abstractmethod
    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        """Add ``member`` to the set stored under ``key``.

        The set's expiry is raised to at least ``ttl_seconds`` from now, so it
        outlives every member added with that TTL.
        """

    @abstractmethod
    async def members(self, key: str) -> set[str]:
        """Return all members of the set stored under ``key``."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """List keys matching a glob-style ``pattern``."""

    @abstractmethod
    async def eval(self, script: str, keys: Sequence[str], args: Sequence[str]) -> Any:
        """Run ``script`` atomically on the server."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""

    @abstractmethod
    async def info(self, section: str | None = None) -> dict[str, Any]:
        """Return server information, optionally limited to a section."""

    @abstractmethod
    async def dbsize(self) -> int:
        """Return the number of keys in the current database."""

    @abstractmethod
    async def flush(self) -> None:
        """Remove every key in the current database."""

    async def close(self) -> None:
        """Release any connections held by the store."""
        return None


class RedisCacheStore(CacheStore):
    """CacheStore backed by a redis-py asyncio client.

    The client must be created with ``decode_responses=True``. Redis errors
    are translated into ``StoreError`` so callers never depend on redis-py.
    """

    def __init__(self, client: Redis):
        self.client = client

    async def _run(self, command: str, result: Awaitable[T] | T) -> T:
        try:
            return await cast(Awaitable[T], result)
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis {command} failed: {e}") from e

    async def get(self, key: str) -> str | None:
        return await self._run("GET", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self._run("SETEX", self.client.setex(key, ttl_seconds, value))

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        result = await self._run("SET", self.client.set(key, value, nx=True, px=ttl_ms))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("DEL", self.client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("EXISTS", self.client.exists(key)))

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        # NX sets the first expiry, GT only ever extends it (Redis >= 7.0)
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.sadd(key, member)
                pipe.expire(key, ttl_seconds, nx=True)
                pipe.expire(key, ttl_seconds, gt=True)
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis SADD failed: {e}") from e

    async def members(self, key: str) -> set[str]:
        return set(await self._run("SMEMBERS", self.client.smembers(key)))

    async def keys(self, pattern: str) -> list[str]:
        # SCAN instead of KEYS to avoid blocking on large keyspaces
        found: list[str] = []
        try:
            async for key in self.client.scan_iter(match=pattern):
                found.append(key)
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis SCAN failed: {e}") from e
        return found

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[str]) -> Any:
        return await self._run("EVAL", self.client.eval(script, len(keys), *keys, *args))

    async def ping(self) -> bool:
        return bool(await self._run("PING", self.client.ping()))

    async def info(self, section: str | None = None) -> dict[str, Any]:
        if section is None:
            return dict(await self._run("INFO", self.client.info()))
        return dict(await self._run("INFO", self.client.info(section)))

    async def dbsize(self) -> int:
        return int(await self._run("DBSIZE", self.client.dbsize()))

    async def flush(self) -> None:
        await self._run("FLUSHDB", self.client.flushdb())

    async def close(self) -> None:
        await self.client.aclose()
