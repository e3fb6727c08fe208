"""
In-Memory Redis-Compatible Backend
Used when Redis is disabled or unreachable, and in tests.
Implements the small slice of the redis.asyncio API the cache service needs.
"""

import time
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class InMemoryRedis:
    """Single-process key/value store with per-key TTL and the redis.asyncio call shapes"""

    def __init__(self):
        self._store: Dict[str, Dict[str, Any]] = {}
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def _cleanup_expired(self) -> None:
        current_time = time.monotonic()
        expired_keys = [
            key for key, entry in self._store.items()
            if entry["expires_at"] is not None and entry["expires_at"] <= current_time
        ]
        for key in expired_keys:
            del self._store[key]
            self.stats["evictions"] += 1

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        self._cleanup_expired()
        entry = self._store.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        self.stats["hits"] += 1
        return entry["value"]

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self._store[key] = {
            "value": value if isinstance(value, str) else str(value),
            "expires_at": time.monotonic() + ex if ex else None,
        }
        self.stats["sets"] += 1
        return True

    async def setex(self, key: str, seconds: int, value: Any) -> bool:
        return await self.set(key, value, ex=seconds)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                deleted += 1
        self.stats["deletes"] += deleted
        return deleted

    async def exists(self, key: str) -> int:
        return 1 if await self.get(key) is not None else 0

    async def ttl(self, key: str) -> int:
        self._cleanup_expired()
        entry = self._store.get(key)
        if entry is None:
            return -2
        if entry["expires_at"] is None:
            return -1
        return max(0, int(entry["expires_at"] - time.monotonic()))

    async def flushdb(self) -> bool:
        self._store.clear()
        return True

    async def aclose(self) -> None:
        self._store.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "keys": len(self._store)}
