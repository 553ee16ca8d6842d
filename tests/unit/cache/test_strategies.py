"""Tests for per-entity caching strategies."""

import pytest

from depot.cache.service import CacheService
from depot.cache.strategies import STRATEGIES, CacheStrategy, PreloadItem, StrategicCache


@pytest.fixture
def strategic(cache: CacheService) -> StrategicCache:
    return StrategicCache(cache)


class TestStrategicCache:
    """Test strategy-driven caching."""

    def test_every_strategy_is_tagged(self) -> None:
        for strategies in STRATEGIES.values():
            for strategy in strategies.values():
                assert strategy.default_ttl > 0
                assert strategy.tags

    async def test_set_applies_strategy(
        self, strategic: StrategicCache, cache: CacheService
    ) -> None:
        details = STRATEGIES["product"]["details"]
        await strategic.set(details, "7", {"sku": "A-7"})

        assert await strategic.get(details, "7") == {"sku": "A-7"}
        assert cache.store.ttl("wms:product:details:7") == 1800  # type: ignore[attr-defined]
        assert await cache.tags.members("products") == {"wms:product:details:7"}

    async def test_get_or_set(self, strategic: StrategicCache) -> None:
        stock = STRATEGIES["product"]["stock"]

        async def load() -> int:
            return 42

        assert await strategic.get_or_set(stock, "7", load) == 42
        assert await strategic.get(stock, "7") == 42
        assert await strategic.delete(stock, "7")

    async def test_invalidate_entity_uses_union_of_tags(self, strategic: StrategicCache) -> None:
        await strategic.set(STRATEGIES["pallet"]["details"], "P-1", {"id": "P-1"})
        await strategic.set(STRATEGIES["pallet"]["history"], "P-1", ["moved"])
        await strategic.set(STRATEGIES["ucp"]["items"], "U-1", [1, 2])

        assert await strategic.invalidate_entity("pallet") == 2
        assert await strategic.get(STRATEGIES["ucp"]["items"], "U-1") == [1, 2]

    async def test_invalidate_unknown_entity(self, strategic: StrategicCache) -> None:
        with pytest.raises(ValueError, match="Unknown entity type"):
            await strategic.invalidate_entity("forklift")

    async def test_preload(self, strategic: StrategicCache) -> None:
        """Missing entries are loaded, cached ones and failures are skipped."""
        config = CacheStrategy("system:config", 7200, ("system",))
        await strategic.set(config, "already", "cached")

        async def load_zone() -> dict:
            return {"zone": "A"}

        async def broken() -> dict:
            raise RuntimeError("database down")

        loaded = await strategic.preload(
            [
                PreloadItem(config, "zones", load_zone),
                PreloadItem(config, "already", load_zone),
                PreloadItem(config, "broken", broken),
            ]
        )

        assert loaded == 1
        assert await strategic.get(config, "zones") == {"zone": "A"}
        assert await strategic.get(config, "broken") is None
