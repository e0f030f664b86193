from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding shared fixed-window rate-limit counters."""

    # Atomic fixed-window hit: a request at the limit is rejected without
    # incrementing, so a window never counts past its limit. The first INCR of
    # a window sets its expiry.
    _HIT_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('TTL', key)
if current >= limit then
  if ttl < 0 then
    redis.call('EXPIRE', key, window)
    ttl = window
  end
  return {0, current, ttl}
end
local count = redis.call('INCR', key)
if count == 1 or ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {1, count, ttl}
"""

    _PEEK_SCRIPT = """
local key = KEYS[1]
local count = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('TTL', key)
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._hit = self.client.register_script(self._HIT_SCRIPT)
        self._peek = self.client.register_script(self._PEEK_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_timeout=self.socket_timeout
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-controlled parts cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        """Count one request in the current window.

        Returns ``(allowed, count, reset_seconds)``.
        """
        allowed, count, ttl = await self._hit(
            keys=[self._normalize_rate_key(key)], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), max(0, int(ttl))

    async def peek_window(self, key: str) -> Tuple[int, int]:
        """Return ``(count, reset_seconds)`` for the current window without counting."""
        count, ttl = await self._peek(keys=[self._normalize_rate_key(key)])
        return int(count), max(0, int(ttl))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool; call on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
