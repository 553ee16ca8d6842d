"""Distributed coordination primitives.

Provides:
- DistributedLock: named mutual exclusion with token-checked release
"""

from depot.distributed.lock import DistributedLock, LockHandle

__all__ = [
    "DistributedLock",
    "LockHandle",
]
