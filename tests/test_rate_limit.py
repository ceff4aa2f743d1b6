"""Tests for fixed-window rate limiting (in-memory and Redis-backed)."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from identitycore.service.errors import RateLimitExceeded
from identitycore.service.rate_limit import (
    InMemoryRateLimiter,
    RateLimitPolicy,
    RedisRateLimiter,
)
from identitycore.storage.redis_cache import RedisCache


def policy(limit=3, seconds=60):
    return RateLimitPolicy(limit=limit, window=timedelta(seconds=seconds))


class TestInMemoryRateLimiter:
    """Tests for the process-local limiter."""

    async def test_counts_until_limit(self):
        limiter = InMemoryRateLimiter(policy(limit=3))

        records = [await limiter.hit("id") for _ in range(3)]

        assert [r.attempts for r in records] == [1, 2, 3]
        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.hit("id", op="initiate_password_reset")
        assert exc_info.value.op == "initiate_password_reset"
        assert exc_info.value.retry_at == records[0].window_start + timedelta(seconds=60)

    async def test_rejected_attempts_are_not_counted(self):
        limiter = InMemoryRateLimiter(policy(limit=2))
        await limiter.hit("id")
        await limiter.hit("id")

        for _ in range(3):
            with pytest.raises(RateLimitExceeded):
                await limiter.hit("id")

        assert limiter.peek("id").attempts == 2

    async def test_identifiers_are_independent(self):
        limiter = InMemoryRateLimiter(policy(limit=1))
        await limiter.hit("a")

        assert (await limiter.hit("b")).attempts == 1

    async def test_window_expiry_resets_counter(self, monkeypatch):
        limiter = InMemoryRateLimiter(policy(limit=1, seconds=60))
        await limiter.hit("id")
        later = limiter._now() + timedelta(seconds=61)
        monkeypatch.setattr(limiter, "_now", lambda: later)

        record = await limiter.hit("id")

        assert record.attempts == 1
        assert record.window_start == later

    async def test_zero_limit_never_blocks(self):
        limiter = InMemoryRateLimiter(policy(limit=0))
        for _ in range(10):
            await limiter.hit("id")

    async def test_reset_and_cleanup(self, monkeypatch):
        limiter = InMemoryRateLimiter(policy(limit=1))
        await limiter.hit("a")
        await limiter.hit("b")

        await limiter.reset("a")
        assert limiter.peek("a") is None

        later = limiter._now() + timedelta(minutes=5)
        monkeypatch.setattr(limiter, "_now", lambda: later)
        assert await limiter.cleanup_expired() == 1
        assert limiter.peek("b") is None

    def test_concurrent_hits_never_exceed_limit(self):
        limiter = InMemoryRateLimiter(policy(limit=5))

        def attempt(_):
            try:
                asyncio.run(limiter.hit("shared"))
                return True
            except RateLimitExceeded:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(attempt, range(40)))

        assert outcomes.count(True) == 5
        assert limiter.peek("shared").attempts == 5


class TestRedisRateLimiter:
    """Tests for the Redis-backed limiter with a mocked cache."""

    async def test_allowed_hit(self):
        cache = MagicMock()
        cache.hit_fixed_window = AsyncMock(return_value=(True, 2, 30_000))
        limiter = RedisRateLimiter(cache, policy(limit=3, seconds=60))

        record = await limiter.hit("a@x.com")

        cache.hit_fixed_window.assert_awaited_once_with("password_reset:a@x.com", 3, 60)
        assert record.attempts == 2
        remaining = record.retry_at - limiter._now()
        assert timedelta(seconds=28) < remaining <= timedelta(seconds=30)

    async def test_refused_hit_raises_with_retry_at(self):
        cache = MagicMock()
        cache.hit_fixed_window = AsyncMock(return_value=(False, 3, 10_000))
        limiter = RedisRateLimiter(cache, policy(limit=3))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.hit("a@x.com", op="initiate_password_reset")

        err = exc_info.value
        assert err.attempts == 3
        assert 9 <= err.retry_after_seconds() <= 10

    async def test_reset_clears_key(self):
        cache = MagicMock()
        cache.clear_rate_limit = AsyncMock()
        limiter = RedisRateLimiter(cache, policy(), namespace="custom")

        await limiter.reset("id")

        cache.clear_rate_limit.assert_awaited_once_with("custom:id")
        assert await limiter.cleanup_expired() == 0


class TestRedisCache:
    """Tests for the Redis wrapper without a server."""

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("password_reset:a@x.com")

        assert key.startswith("rate:")
        assert "a@x.com" not in key
        assert key == RedisCache._normalize_rate_key("password_reset:a@x.com")

    async def test_hit_fixed_window_runs_script(self):
        with patch("identitycore.storage.redis_cache.aioredis.from_url") as from_url:
            client = MagicMock()
            script = AsyncMock(return_value=[1, 1, 60_000])
            client.register_script.return_value = script
            from_url.return_value = client

            cache = RedisCache("redis://localhost:6379/0")
            allowed, attempts, ttl_ms = await cache.hit_fixed_window("k", 5, 60)

        assert (allowed, attempts, ttl_ms) == (True, 1, 60_000)
        script.assert_awaited_once_with(
            keys=[RedisCache._normalize_rate_key("k")], args=[5, 60_000]
        )

    async def test_close_uses_aclose(self):
        with patch("identitycore.storage.redis_cache.aioredis.from_url") as from_url:
            client = MagicMock()
            client.aclose = AsyncMock()
            from_url.return_value = client

            cache = RedisCache("redis://localhost:6379/0")
            await cache.close()

        client.aclose.assert_awaited_once()
