"""Tests for the fixed-window RateLimiter (in-process backend) and key derivation."""

import asyncio

import pytest

from notekeeper.config import Settings
from notekeeper.service.rate_limit import RateLimiter, RateLimitPolicy, RateLimitScope
from notekeeper.service.runtime import (
    AUTH_POLICY,
    EMAIL_VERIFICATION_POLICY,
    PASSWORD_RESET_EMAIL_POLICY,
    PASSWORD_RESET_POLICY,
    build_policies,
)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def clock():
    return FakeMonotonic()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def policy():
    return RateLimitPolicy(name="auth", max_requests=5, window_seconds=60)


@pytest.fixture
def failures_policy():
    return RateLimitPolicy(
        name="password-reset",
        max_requests=3,
        window_seconds=60,
        count_failed_only=True,
        scope=RateLimitScope.BEARER,
    )


class TestCountEveryRequest:
    async def test_allows_max_then_blocks(self, limiter, policy):
        decisions = [await limiter.check("k", policy) for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]
        assert decisions[5].remaining == 0

    async def test_allows_again_after_window(self, limiter, policy, clock):
        for _ in range(5):
            await limiter.check("k", policy)
        assert (await limiter.check("k", policy)).allowed is False

        clock.value += 60

        decision = await limiter.check("k", policy)
        assert decision.allowed is True
        assert decision.remaining == 4

    async def test_reset_seconds_counts_down(self, limiter, policy, clock):
        first = await limiter.check("k", policy)
        clock.value += 20.5
        later = await limiter.check("k", policy)

        assert first.reset_seconds == 60
        assert later.reset_seconds == 40

    async def test_keys_are_independent(self, limiter, policy):
        for _ in range(5):
            await limiter.check("a", policy)

        assert (await limiter.check("a", policy)).allowed is False
        assert (await limiter.check("b", policy)).allowed is True

    async def test_blocked_requests_do_not_extend_count(self, limiter, policy, clock):
        for _ in range(10):
            await limiter.check("k", policy)

        assert limiter._local["k"][1] == 5


class TestCountFailedOnly:
    async def test_check_does_not_count(self, limiter, failures_policy):
        for _ in range(10):
            decision = await limiter.check("k", failures_policy)
            assert decision.allowed is True
            assert decision.remaining == 3

    async def test_failures_block_after_max(self, limiter, failures_policy):
        for _ in range(3):
            assert (await limiter.check("k", failures_policy)).allowed is True
            await limiter.record_failure("k", failures_policy)

        assert (await limiter.check("k", failures_policy)).allowed is False

    async def test_failure_count_is_capped(self, limiter, failures_policy):
        counts = [await limiter.record_failure("k", failures_policy) for _ in range(5)]

        assert counts == [1, 2, 3, 3, 3]

    async def test_failures_expire_with_window(self, limiter, failures_policy, clock):
        for _ in range(3):
            await limiter.record_failure("k", failures_policy)
        clock.value += 61

        assert (await limiter.check("k", failures_policy)).allowed is True


class TestConcurrency:
    async def test_concurrent_checks_never_exceed_limit(self, limiter, policy):
        decisions = await asyncio.gather(*(limiter.check("k", policy) for _ in range(20)))

        assert sum(d.allowed for d in decisions) == 5
        assert limiter._local["k"][1] <= policy.max_requests

    async def test_concurrent_failures_capped_at_limit(self, limiter, failures_policy):
        await asyncio.gather(*(limiter.record_failure("k", failures_policy) for _ in range(10)))

        decision = await limiter.check("k", failures_policy)

        assert decision.allowed is False
        assert limiter._local["k"][1] == failures_policy.max_requests


class TestEviction:
    async def test_evict_expired_drops_elapsed_windows(self, limiter, policy, clock):
        await limiter.check("old", policy)
        clock.value += 30
        await limiter.check("new", policy)
        clock.value += 30

        assert await limiter.evict_expired() == 1
        assert "old" not in limiter._local
        assert "new" in limiter._local


class TestKeyDerivation:
    def test_ip_route_scope_separates_routes(self, policy):
        login = RateLimiter.key_for(policy, ip="10.0.0.1", route="/v1/auth/login")
        register = RateLimiter.key_for(policy, ip="10.0.0.1", route="/v1/auth/register")

        assert login != register
        assert "10.0.0.1" in login

    def test_bearer_scope_uses_session_user(self, failures_policy):
        key = RateLimiter.key_for(failures_policy, ip="10.0.0.1", route="/x", user_id="u-1")

        assert key == "password-reset|user:u-1"

    def test_bearer_scope_falls_back_to_ip(self, failures_policy):
        key = RateLimiter.key_for(failures_policy, ip="10.0.0.2", route="/x", user_id=None)

        assert key == "password-reset|ip:10.0.0.2"

    def test_recipient_key_hides_address(self, failures_policy):
        key = RateLimiter.recipient_key(failures_policy, "victim@example.com")

        assert key.startswith("password-reset|email:")
        assert "victim" not in key

    def test_ip_scope_ignores_route(self):
        policy = RateLimitPolicy(
            name="p", max_requests=1, window_seconds=1, scope=RateLimitScope.IP
        )

        assert RateLimiter.key_for(policy, ip="1.2.3.4", route="/a") == RateLimiter.key_for(
            policy, ip="1.2.3.4", route="/b"
        )


class TestPolicies:
    def test_build_policies_from_settings(self):
        settings = Settings(auth_rate_limit_max=7, reset_rate_limit_max=2)

        policies = build_policies(settings)

        assert policies[AUTH_POLICY].max_requests == 7
        assert policies[AUTH_POLICY].count_failed_only is False
        assert policies[AUTH_POLICY].scope is RateLimitScope.IP_ROUTE
        for name in (PASSWORD_RESET_POLICY, EMAIL_VERIFICATION_POLICY):
            assert policies[name].max_requests == 2
            assert policies[name].count_failed_only is True
            assert policies[name].scope is RateLimitScope.BEARER
        assert policies[PASSWORD_RESET_EMAIL_POLICY].max_requests == 2
        assert policies[PASSWORD_RESET_EMAIL_POLICY].count_failed_only is False
