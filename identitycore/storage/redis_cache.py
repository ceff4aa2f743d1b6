from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Fixed-window counter: check and increment in one atomic step so two
    # workers cannot both take the last slot of a window.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local attempts = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('PTTL', key)

if attempts >= limit and ttl > 0 then
  return {0, attempts, ttl}
end

attempts = redis.call('INCR', key)
if attempts == 1 or ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {1, attempts, ttl}
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

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash key components so user input cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one attempt against ``key``.

        Returns ``(allowed, attempts, ttl_ms)``. A refused attempt is not
        counted.
        """
        allowed, attempts, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[limit, int(window_seconds * 1000)],
        )
        return bool(int(allowed)), int(attempts), max(0, int(ttl_ms))

    async def clear_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()
