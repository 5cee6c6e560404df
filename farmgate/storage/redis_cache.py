from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin async Redis wrapper implementing the ``Cache`` protocol."""

    KEY_PREFIX = "farmgate"

    # Atomic fixed-window counter: the TTL is only set when the key is created
    _FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return current
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @classmethod
    def _normalize_key(cls, key: str) -> str:
        """Hash caller keys so client-supplied parts cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{cls.KEY_PREFIX}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._normalize_key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._normalize_key(key), value, ex=max(1, ttl_seconds))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        count = await self._fixed_window(
            keys=[self._normalize_key(key)], args=[max(1, ttl_seconds)]
        )
        return int(count)

    async def ttl(self, key: str) -> int:
        remaining = await self.client.ttl(self._normalize_key(key))
        return max(0, int(remaining))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._normalize_key(key)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited the same
    way as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(RedisCache._normalize_key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(RedisCache._normalize_key(key), value, ex=max(1, ttl_seconds))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        count = self._fixed_window(
            keys=[RedisCache._normalize_key(key)], args=[max(1, ttl_seconds)]
        )
        return int(count)

    async def ttl(self, key: str) -> int:
        return max(0, int(self._sync_client.ttl(RedisCache._normalize_key(key))))

    async def delete(self, key: str) -> bool:
        return bool(self._sync_client.delete(RedisCache._normalize_key(key)))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
