"""Error kinds raised by the caching and coordination layer.

Only connectivity problems are errors. A value that is not valid JSON is
returned raw, and a lock that could not be taken before its timeout is
reported as ``None``.
"""

from __future__ import annotations


class StoreError(Exception):
    """Raised by a CacheStore when the backing store fails a command."""


class CacheError(Exception):
    """Base class for cache layer failures surfaced to callers."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class CacheUnavailable(CacheError):
    """Backing store unreachable or returned a protocol error."""


class LockError(CacheError):
    """Connectivity failure while acquiring or releasing a distributed lock."""
