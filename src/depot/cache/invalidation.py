"""Entity-driven cache invalidation.

Cached computations declare the entities they depend on ("products",
"pallets", ...) as tags. After any write to an entity, the write path calls
``DependencyInvalidator.invalidate`` so every dependent entry is dropped.
Entity names and cache tags share one namespace.

Example:
    invalidator = DependencyInvalidator(cache, memoizer)

    async with invalidator.after_write("products"):
        await repository.update_product(product)
    # every entry tagged "products" is gone once the block succeeds
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from depot.cache.memoize import Memoizer
    from depot.cache.service import CacheService

logger = logging.getLogger(__name__)


class DependencyInvalidator:
    """Invalidates cached results by the entity names they depend on.

    Failures of the backing store propagate: invalidation is an explicit
    call, and a silent failure would leave stale results in place.

    Args:
        cache: Cache service holding the tagged entries
        memoizer: Memoizer whose in-process copies should be dropped as well
    """

    def __init__(self, cache: CacheService, memoizer: Memoizer | None = None):
        self.cache = cache
        self.memoizer = memoizer

    async def invalidate(self, entity: str) -> int:
        """Drop every entry depending on ``entity``. Returns remote keys removed."""
        return await self.invalidate_many([entity])

    async def invalidate_many(self, entities: Iterable[str]) -> int:
        """Drop every entry depending on any of ``entities``."""
        entity_list = list(entities)

        if self.memoizer is not None:
            for entity in entity_list:
                self.memoizer.forget(entity)

        count = await self.cache.invalidate_by_tags(entity_list)
        logger.info(
            "Cache invalidated by entity",
            extra={"entities": entity_list, "deleted": count},
        )
        return count

    @asynccontextmanager
    async def after_write(self, *entities: str) -> AsyncIterator[None]:
        """Invalidate ``entities`` once the enclosed write succeeds.

        Nothing is invalidated if the block raises.
        """
        yield
        await self.invalidate_many(entities)
