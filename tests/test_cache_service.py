"""
Cache service and in-memory backend tests
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from caching.memory_backend import InMemoryRedis
from services.cache_service import CacheService


class TestCacheService:

    @pytest.mark.asyncio
    async def test_disabled_redis_uses_memory_backend(self):
        cache = CacheService()
        await cache.connect(enabled=False)

        assert cache.backend == "memory"
        assert await cache.set_json("k", {"amount": 50.0}, 60)
        assert await cache.get_json("k") == {"amount": 50.0}
        assert await cache.ping()

    @pytest.mark.asyncio
    async def test_unreachable_redis_falls_back_to_memory(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))

        with patch("services.cache_service.redis.from_url", return_value=client):
            cache = CacheService()
            await cache.connect(redis_url="redis://localhost:6390/0", enabled=True)

        assert cache.backend == "memory"
        assert isinstance(cache.client, InMemoryRedis)

    @pytest.mark.asyncio
    async def test_client_errors_are_swallowed(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=ConnectionError("down"))
        client.setex = AsyncMock(side_effect=ConnectionError("down"))
        client.delete = AsyncMock(side_effect=ConnectionError("down"))
        client.ping = AsyncMock(side_effect=ConnectionError("down"))
        cache = CacheService(client)

        assert await cache.get_json("k") is None
        assert await cache.set_json("k", [1], 60) is False
        assert await cache.delete("k") is False
        assert await cache.ping() is False

    @pytest.mark.asyncio
    async def test_corrupt_entry_reads_as_missing(self):
        backend = InMemoryRedis()
        await backend.set("k", "{not json")
        assert await CacheService(backend).get_json("k") is None

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        backend = InMemoryRedis()
        cache = CacheService(backend)
        await cache.set_json("k", 1, 60)

        await cache.close()

        assert backend.get_stats()["keys"] == 0


class TestInMemoryRedis:

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        backend = InMemoryRedis()
        await backend.setex("short", 10, "v")
        await backend.set("forever", "v")

        assert await backend.ttl("forever") == -1
        assert 0 < await backend.ttl("short") <= 10
        assert await backend.ttl("missing") == -2

        with patch("caching.memory_backend.time.monotonic", return_value=10 ** 12):
            assert await backend.get("short") is None
            assert await backend.exists("forever") == 1

    @pytest.mark.asyncio
    async def test_delete_counts_removed_keys(self):
        backend = InMemoryRedis()
        await backend.set("a", "1")
        await backend.set("b", "2")

        assert await backend.delete("a", "b", "c") == 2
        assert backend.get_stats()["deletes"] == 2
