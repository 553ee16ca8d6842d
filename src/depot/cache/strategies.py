"""Caching strategies for warehouse entities.

Each strategy fixes the prefix, default TTL and tags used for one kind of
cached data, so call sites only supply the logical key:

    strategic = StrategicCache(cache)
    product = await strategic.get_or_set(
        STRATEGIES["product"]["details"], str(product_id), load_product
    )

    # After a stock movement
    await strategic.invalidate_entity("product")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from depot.cache.service import CacheService

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheStrategy:
    """Prefix, default TTL (seconds) and tags for one kind of cached data."""

    prefix: str
    default_ttl: int
    tags: tuple[str, ...]


STRATEGIES: Mapping[str, Mapping[str, CacheStrategy]] = {
    # Profile data lives longer than sessions
    "user": {
        "profile": CacheStrategy("user:profile", 3600, ("users",)),
        "session": CacheStrategy("user:session", 1800, ("users", "sessions")),
        "preferences": CacheStrategy("user:preferences", 7200, ("users",)),
    },
    # Invalidated on inventory changes
    "product": {
        "details": CacheStrategy("product:details", 1800, ("products",)),
        "stock": CacheStrategy("product:stock", 300, ("products", "inventory")),
        "search": CacheStrategy("product:search", 600, ("products", "search")),
    },
    # Short TTLs, pallets move often
    "pallet": {
        "details": CacheStrategy("pallet:details", 600, ("pallets",)),
        "position": CacheStrategy("pallet:position", 300, ("pallets", "positions")),
        "history": CacheStrategy("pallet:history", 3600, ("pallets", "history")),
    },
    # Very short TTLs, items are transferred between UCPs constantly
    "ucp": {
        "details": CacheStrategy("ucp:details", 300, ("ucps",)),
        "items": CacheStrategy("ucp:items", 180, ("ucps", "items")),
        "transfers": CacheStrategy("ucp:transfers", 600, ("ucps", "transfers")),
    },
    "position": {
        "details": CacheStrategy("position:details", 1800, ("positions",)),
        "occupancy": CacheStrategy("position:occupancy", 300, ("positions", "occupancy")),
        "structure": CacheStrategy("position:structure", 7200, ("positions", "structure")),
    },
    "system": {
        "config": CacheStrategy("system:config", 7200, ("system",)),
        "metrics": CacheStrategy("system:metrics", 60, ("system", "metrics")),
    },
}


@dataclass(frozen=True)
class PreloadItem:
    """An entry to warm: where it goes and how to load it."""

    strategy: CacheStrategy
    key: str
    load: Callable[[], Awaitable[Any]]


class StrategicCache:
    """CacheService helpers that apply a CacheStrategy."""

    def __init__(
        self,
        cache: CacheService,
        strategies: Mapping[str, Mapping[str, CacheStrategy]] = STRATEGIES,
    ):
        self.cache = cache
        self.strategies = strategies

    async def get(self, strategy: CacheStrategy, key: str) -> Any | None:
        return await self.cache.get(key, prefix=strategy.prefix)

    async def set(
        self,
        strategy: CacheStrategy,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> None:
        await self.cache.set(
            key,
            value,
            ttl=ttl or strategy.default_ttl,
            tags=strategy.tags,
            prefix=strategy.prefix,
        )

    async def get_or_set(
        self,
        strategy: CacheStrategy,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: int | None = None,
    ) -> T:
        return await self.cache.get_or_set(
            key,
            compute,
            ttl=ttl or strategy.default_ttl,
            tags=strategy.tags,
            prefix=strategy.prefix,
        )

    async def delete(self, strategy: CacheStrategy, key: str) -> bool:
        return await self.cache.delete(key, prefix=strategy.prefix)

    async def invalidate_entity(self, entity_type: str) -> int:
        """Invalidate the union of tags used by every strategy of an entity."""
        try:
            strategies = self.strategies[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None

        tags = sorted({tag for strategy in strategies.values() for tag in strategy.tags})
        deleted = await self.cache.invalidate_by_tags(tags)
        logger.info(
            "Cache invalidation by entity",
            extra={"entity_type": entity_type, "tags": tags, "deleted": deleted},
        )
        return deleted

    async def preload(self, items: Iterable[PreloadItem]) -> int:
        """Concurrently fill entries that are not cached yet.

        Failures of individual items are logged and skipped. Returns the
        number of entries loaded.
        """
        item_list = list(items)
        logger.info("Starting cache preload", extra={"count": len(item_list)})

        async def _preload(item: PreloadItem) -> bool:
            try:
                if await self.get(item.strategy, item.key) is not None:
                    return False
                value = await item.load()
                await self.set(item.strategy, item.key, value)
            except Exception as e:
                logger.warning(
                    "Cache preload failed",
                    extra={"prefix": item.strategy.prefix, "key": item.key, "error": str(e)},
                )
                return False
            return True

        results = await asyncio.gather(*(_preload(item) for item in item_list))
        loaded = sum(results)
        logger.info("Cache preload completed", extra={"loaded": loaded})
        return loaded
