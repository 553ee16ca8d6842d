"""In-process LRU tier for memoized results.

Sits in front of the shared store for values that may be served from process
memory. Entries carry their own TTL, which is always shorter than the remote
TTL for the same volatility, and the least recently used entry is evicted
once ``max_size`` is reached.

The tier is local to one process: invalidations issued elsewhere only reach it
through its short TTL.

Listeners registered with ``add_listener`` are told about every key that
leaves the tier, whether it was evicted, expired, deleted or cleared.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any


@dataclass
class _LocalEntry:
    value: Any
    expires_at: float


class LocalTier:
    """Bounded LRU mapping with per-entry expiry."""

    def __init__(self, max_size: int = 2000, clock: Callable[[], float] = time.monotonic):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, _LocalEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._listeners: list[Callable[[str], None]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        entry = self._entries.get(key)
        return entry is not None and entry.expires_at > self._clock()

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(key)`` whenever an entry leaves the tier."""
        self._listeners.append(listener)

    def _removed(self, key: str) -> None:
        for listener in self._listeners:
            listener(key)

    def get(self, key: str) -> Any | None:
        """Return the cached value or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            self._removed(key)
            return None

        # Move to end (most recently used)
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store a value, evicting the least recently used entry when full."""
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = _LocalEntry(value, self._clock() + ttl_seconds)

        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            self._removed(evicted)

    def delete(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._removed(key)
        return True

    def delete_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self.delete(key))

    def clear(self) -> None:
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._removed(key)
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0
