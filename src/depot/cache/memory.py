"""In-process CacheStore.

Implements the full store contract in memory for single-instance
deployments and tests. Expiry is evaluated lazily against an injectable
clock, so tests can advance time instead of sleeping.

Example:
    clock = ManualClock()
    store = InMemoryCacheStore(clock=clock)
    await store.set("wms:users:42", '{"name": "Ana"}', ttl_seconds=60)
    clock.advance(61)
    assert await store.get("wms:users:42") is None
"""

from __future__ import annotations

import fnmatch
import sys
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from depot.cache import scripts
from depot.cache.store import CacheStore
from depot.errors import StoreError

ScriptHandler = Callable[[Sequence[str], Sequence[str]], Awaitable[Any]]


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class _Entry:
    value: str | set[str]
    expires_at: float | None


class InMemoryCacheStore(CacheStore):
    """Dictionary-backed store with lazy TTL expiry.

    Server-side scripts are not interpreted; ``eval`` dispatches to Python
    handlers registered for the exact script text. The lock release and tag
    invalidation scripts are registered by default.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._failure: str | None = None
        self._scripts: dict[str, ScriptHandler] = {
            scripts.RELEASE_LOCK.strip(): self._release_lock,
            scripts.INVALIDATE_TAG.strip(): self._invalidate_tag,
        }

    def fail_with(self, message: str | None) -> None:
        """Make every subsequent command raise StoreError (None to recover)."""
        self._failure = message

    def register_script(self, script: str, handler: ScriptHandler) -> None:
        """Provide a Python implementation for a server-side script."""
        self._scripts[script.strip()] = handler

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime of ``key`` in seconds, None if absent or persistent."""
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self._clock()

    def _check(self) -> None:
        if self._failure is not None:
            raise StoreError(self._failure)

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _string(self, key: str) -> str | None:
        entry = self._live(key)
        if entry is None:
            return None
        if not isinstance(entry.value, str):
            raise StoreError(f"WRONGTYPE {key} holds a set, not a string")
        return entry.value

    def _set_members(self, key: str) -> set[str]:
        entry = self._live(key)
        if entry is None:
            return set()
        if not isinstance(entry.value, set):
            raise StoreError(f"WRONGTYPE {key} holds a string, not a set")
        return entry.value

    async def get(self, key: str) -> str | None:
        self._check()
        return self._string(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._data[key] = _Entry(value, self._clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        self._check()
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        if self._live(key) is not None:
            return False
        self._data[key] = _Entry(value, self._clock() + ttl_ms / 1000)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    async def exists(self, key: str) -> bool:
        self._check()
        return self._live(key) is not None

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        self._check()
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        entry = self._live(key)
        if entry is None:
            entry = _Entry(set(), None)
            self._data[key] = entry
        elif not isinstance(entry.value, set):
            raise StoreError(f"WRONGTYPE {key} holds a string, not a set")
        entry.value.add(member)
        expires_at = self._clock() + ttl_seconds
        if entry.expires_at is None or expires_at > entry.expires_at:
            entry.expires_at = expires_at

    async def members(self, key: str) -> set[str]:
        self._check()
        return set(self._set_members(key))

    async def keys(self, pattern: str) -> list[str]:
        self._check()
        return [
            key
            for key in list(self._data)
            if self._live(key) is not None and fnmatch.fnmatchcase(key, pattern)
        ]

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[str]) -> Any:
        self._check()
        handler = self._scripts.get(script.strip())
        if handler is None:
            raise StoreError("NOSCRIPT script is not supported by the in-memory store")
        return await handler(keys, args)

    async def ping(self) -> bool:
        self._check()
        return True

    async def info(self, section: str | None = None) -> dict[str, Any]:
        self._check()
        used = sum(
            sys.getsizeof(k) + sys.getsizeof(e.value) for k, e in self._data.items()
        )
        data: dict[str, Any] = {
            "redis_version": "in-memory",
            "used_memory": used,
            "used_memory_human": f"{used / 1024:.2f}K",
        }
        if section in (None, "memory"):
            return data
        return {}

    async def dbsize(self) -> int:
        self._check()
        return len(await self.keys("*"))

    async def flush(self) -> None:
        self._check()
        self._data.clear()

    # -------------------------------------------------------------------------
    # Script emulations
    # -------------------------------------------------------------------------

    async def _release_lock(self, keys: Sequence[str], args: Sequence[str]) -> int:
        if self._string(keys[0]) == args[0]:
            del self._data[keys[0]]
            return 1
        return 0

    async def _invalidate_tag(self, keys: Sequence[str], args: Sequence[str]) -> int:
        members = self._set_members(keys[0])
        deleted = 0
        for member in members:
            if self._live(member) is not None:
                del self._data[member]
                deleted += 1
        self._data.pop(keys[0], None)
        return deleted
