"""
Cache Service
Best-effort JSON cache over Redis with an in-memory fallback.

Nothing cached here is authoritative: every read has a database fallback and
every error is logged and swallowed so the cache can never fail a payment flow.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from caching.memory_backend import InMemoryRedis
from config import Config

logger = logging.getLogger(__name__)


class CacheService:
    """JSON get/set-with-TTL/delete over a redis.asyncio-compatible client"""

    def __init__(self, client: Optional[Any] = None):
        self._client = client
        self.backend = "custom" if client is not None else None

    async def connect(self, redis_url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        """Connect to Redis, falling back to the in-memory backend"""
        if self._client is not None:
            return

        enabled = Config.REDIS_ENABLED if enabled is None else enabled
        if enabled:
            url = redis_url or Config.REDIS_URL
            try:
                client = redis.from_url(
                    url,
                    decode_responses=True,
                    socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                    socket_connect_timeout=Config.REDIS_SOCKET_TIMEOUT,
                )
                await client.ping()
                self._client = client
                self.backend = "redis"
                logger.info(f"✅ CACHE_CONNECTED: redis at {url.split('@')[-1]}")
                return
            except Exception as e:
                logger.warning(f"⚠️ CACHE_REDIS_UNAVAILABLE: {e} - falling back to in-memory cache")

        self._client = InMemoryRedis()
        self.backend = "memory"
        logger.info("🧠 CACHE_MEMORY_BACKEND: using in-process cache")

    @property
    def client(self) -> Any:
        if self._client is None:
            # Used before connect(): never block a payment flow on cache wiring
            self._client = InMemoryRedis()
            self.backend = "memory"
        return self._client

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except Exception as e:
            logger.error(f"❌ CACHE_GET_ERROR: {key} - {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ CACHE_CORRUPT_ENTRY: {key} - {e}")
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> bool:
        try:
            await self.client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.error(f"❌ CACHE_SET_ERROR: {key} - {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.client.delete(key)
            return True
        except Exception as e:
            logger.error(f"❌ CACHE_DELETE_ERROR: {key} - {e}")
            return False

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning(f"⚠️ CACHE_PING_FAILED: {e}")
            return False

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.debug(f"Cache close failed: {e}")
        self._client = None
