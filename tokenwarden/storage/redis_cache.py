from __future__ import annotations

from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the fixed-window rate limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic fixed window: INCR, then start the window on the first hit (or
    # repair a key that lost its TTL). Returns {count, seconds_left}.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = await self._fixed_window(keys=[key], args=[int(window_seconds)])
        return int(count), max(int(ttl), 0)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest,
    but exposes the same async methods as ``RedisCache`` so callers can await
    either one.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
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

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = self._fixed_window(keys=[key], args=[int(window_seconds)])
        return int(count), max(int(ttl), 0)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
