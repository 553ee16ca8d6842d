"""Integration test fixtures using Docker.

Provides a containerized Redis for realistic testing.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import redis.asyncio as redis

from depot.cache.service import CacheService
from depot.cache.store import RedisCacheStore
from depot.distributed.lock import DistributedLock
from tests.integration.redis_container import RedisContainer


def pytest_collection_modifyitems(items):
    """Mark everything under this directory as an integration test."""
    for item in items:
        if "tests/integration" in str(item.path):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        import docker

        client = docker.from_env()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_container(docker_client) -> Iterator[RedisContainer]:
    """Start a Redis container for the test session."""
    container = RedisContainer.start(docker_client)
    yield container
    container.remove()


@pytest.fixture(scope="session")
def redis_url(redis_container: RedisContainer) -> str:
    """Get the Redis URL for the test container."""
    return redis_container.url()


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[redis.Redis]:
    """Create a Redis client for tests."""
    client = redis.from_url(redis_url, decode_responses=True)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest.fixture
def redis_store(redis_client: redis.Redis) -> RedisCacheStore:
    return RedisCacheStore(redis_client)


@pytest.fixture
def redis_cache(redis_store: RedisCacheStore) -> CacheService:
    """Cache service on the container's Redis."""
    return CacheService(
        redis_store,
        key_prefix="it",
        default_ttl=60,
        lock=DistributedLock(redis_store, retry_interval_ms=10),
    )

