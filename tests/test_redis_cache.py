"""Tests for the Redis-backed rate-limit path with the Redis client mocked out."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from notekeeper.service.rate_limit import RateLimiter, RateLimitPolicy
from notekeeper.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    with patch("notekeeper.storage.redis_cache.aioredis.from_url") as from_url:
        client = MagicMock()
        client.register_script.side_effect = lambda source: AsyncMock(name="script")
        from_url.return_value = client
        cache = RedisCache("redis://localhost:6379/0", socket_timeout=1.0)
    return cache


class TestRedisCache:
    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("auth|ip:1.2.3.4|route:/v1/auth/login")

        assert key.startswith("rate:")
        assert "1.2.3.4" not in key

    async def test_hit_window_parses_script_result(self, cache):
        cache._hit.return_value = [1, 3, 42]

        assert await cache.hit_window("k", 5, 60) == (True, 3, 42)
        kwargs = cache._hit.await_args.kwargs
        assert kwargs["args"] == [5, 60]
        assert kwargs["keys"][0].startswith("rate:")

    async def test_peek_window_clamps_missing_ttl(self, cache):
        cache._peek.return_value = [0, -2]

        assert await cache.peek_window("k") == (0, 0)


class TestRateLimiterWithRedis:
    async def test_counting_policy_uses_hit(self, cache):
        cache._hit.return_value = [0, 5, 30]
        limiter = RateLimiter(cache)
        policy = RateLimitPolicy(name="auth", max_requests=5, window_seconds=60)

        decision = await limiter.check("k", policy)

        assert decision.allowed is False
        assert decision.reset_seconds == 30
        cache._peek.assert_not_awaited()

    async def test_failures_only_policy_peeks_then_hits_on_failure(self, cache):
        cache._peek.return_value = [2, 50]
        cache._hit.return_value = [1, 3, 50]
        limiter = RateLimiter(cache)
        policy = RateLimitPolicy(
            name="password-reset", max_requests=3, window_seconds=60, count_failed_only=True
        )

        decision = await limiter.check("k", policy)
        count = await limiter.record_failure("k", policy)

        assert decision.allowed is True
        assert decision.remaining == 1
        assert count == 3
        cache._hit.assert_awaited_once()
