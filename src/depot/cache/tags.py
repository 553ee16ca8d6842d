"""Tag index backing bulk invalidation.

Each tag owns a set record ``tag:{name}`` listing the full cache keys that
were written with that tag. A key is registered after its value is written,
so a crash in between leaves an untagged entry that still expires by TTL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from depot.cache import scripts
from depot.cache.keys import KeyBuilder
from depot.cache.store import CacheStore

logger = logging.getLogger(__name__)


class TagIndex:
    """Maintains tag name -> member key sets in the backing store."""

    def __init__(self, store: CacheStore):
        self.store = store

    async def add(self, full_key: str, tags: Iterable[str], ttl_seconds: int) -> None:
        """Register ``full_key`` under every tag.

        Each tag set expires no earlier than ``ttl_seconds`` from now, which
        should be the TTL the key itself was written with.
        """
        for tag in tags:
            await self.store.add_member(KeyBuilder.tag(tag), full_key, ttl_seconds)

    async def members(self, tag: str) -> set[str]:
        """Keys currently registered under ``tag``."""
        return await self.store.members(KeyBuilder.tag(tag))

    async def clear(self, tag: str) -> None:
        """Drop the tag's member set without touching the member keys."""
        await self.store.delete(KeyBuilder.tag(tag))

    async def invalidate(self, tag: str, atomic: bool = True) -> int:
        """Delete every key registered under ``tag``, then the tag itself.

        In atomic mode a single server-side script reads the members, deletes
        them and deletes the index, so a concurrent ``add`` lands either
        before (and is deleted) or after (and survives with its tag).

        The non-atomic mode issues the three steps separately. A key tagged
        between the member delete and the index delete keeps its value but
        loses its tag association.

        Returns the number of member keys that actually existed.
        """
        tag_key = KeyBuilder.tag(tag)
        if atomic:
            return int(await self.store.eval(scripts.INVALIDATE_TAG, [tag_key], []))

        keys = await self.store.members(tag_key)
        if not keys:
            return 0

        deleted = await self.store.delete(*keys)
        await self.store.delete(tag_key)
        logger.debug("Invalidated tag %s", tag, extra={"tag": tag, "deleted": deleted})
        return deleted
