from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from notekeeper.logging import fingerprint, get_logger
from notekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimitScope(str, Enum):
    """How the caller identity in a rate-limit key is derived."""

    IP = "ip"
    IP_ROUTE = "ip_route"
    # User behind a validated bearer session, the caller IP otherwise
    BEARER = "bearer"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int
    count_failed_only: bool = False
    scope: RateLimitScope = RateLimitScope.IP_ROUTE


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed-window request limiter keyed by (policy, caller identity).

    Windows start on the first counted request for a key and last
    ``window_seconds``; a burst straddling a window boundary can therefore
    see up to twice the limit. Policies with ``count_failed_only`` only read
    the counter in ``check`` and are advanced through ``record_failure``.

    Counters live in Redis when a cache is configured, otherwise in a
    process-wide dict guarded by an asyncio lock.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self._clock = clock
        # key -> (window_start, count, window_seconds)
        self._local: Dict[str, Tuple[float, int, int]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def key_for(
        policy: RateLimitPolicy,
        *,
        ip: Optional[str],
        route: str,
        user_id: Optional[str] = None,
    ) -> str:
        """Counter key for a request; ``user_id`` must come from a validated session."""
        caller_ip = ip or "unknown"
        if policy.scope == RateLimitScope.BEARER and user_id:
            identity = f"user:{user_id}"
        elif policy.scope == RateLimitScope.IP_ROUTE:
            identity = f"ip:{caller_ip}|route:{route}"
        else:
            identity = f"ip:{caller_ip}"
        return f"{policy.name}|{identity}"

    @staticmethod
    def recipient_key(policy: RateLimitPolicy, email: str) -> str:
        return f"{policy.name}|email:{fingerprint(email)}"

    def _live_window(self, key: str, now: float) -> Optional[Tuple[float, int, int]]:
        entry = self._local.get(key)
        if entry is None:
            return None
        start, _, window = entry
        if now - start >= window:
            self._local.pop(key, None)
            return None
        return entry

    @staticmethod
    def _reset_after(start: float, window: int, now: float) -> int:
        return max(0, math.ceil(start + window - now))

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Decide whether a request may proceed.

        For policies counting every request an allowed request is counted
        atomically with the decision.
        """
        limit = policy.max_requests
        if limit <= 0:
            return RateLimitDecision(True, limit, limit, 0)
        if self.cache is not None:
            decision = await self._check_redis(key, policy)
        else:
            decision = await self._check_local(key, policy)
        if not decision.allowed:
            logger.warning(
                "rate_limit_blocked",
                policy=policy.name,
                key_fingerprint=fingerprint(key),
                reset_seconds=decision.reset_seconds,
            )
        return decision

    async def _check_local(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        limit = policy.max_requests
        async with self._lock:
            now = self._clock()
            entry = self._live_window(key, now)
            start, count = (entry[0], entry[1]) if entry else (now, 0)
            if count >= limit:
                return RateLimitDecision(
                    False, limit, 0, self._reset_after(start, policy.window_seconds, now)
                )
            if not policy.count_failed_only:
                count += 1
                self._local[key] = (start, count, policy.window_seconds)
            return RateLimitDecision(
                True,
                limit,
                limit - count,
                self._reset_after(start, policy.window_seconds, now),
            )

    async def _check_redis(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        limit = policy.max_requests
        if policy.count_failed_only:
            count, ttl = await self.cache.peek_window(key)
            allowed = count < limit
        else:
            allowed, count, ttl = await self.cache.hit_window(
                key, limit, policy.window_seconds
            )
        return RateLimitDecision(allowed, limit, max(0, limit - count), ttl)

    async def record_failure(self, key: str, policy: RateLimitPolicy) -> int:
        """Count one failed attempt against a failures-only policy."""
        if self.cache is not None:
            _, count, _ = await self.cache.hit_window(
                key, policy.max_requests, policy.window_seconds
            )
        else:
            async with self._lock:
                now = self._clock()
                entry = self._live_window(key, now)
                start, count = (entry[0], entry[1]) if entry else (now, 0)
                count = min(policy.max_requests, count + 1)
                self._local[key] = (start, count, policy.window_seconds)
        logger.info(
            "rate_limit_failure_recorded",
            policy=policy.name,
            key_fingerprint=fingerprint(key),
            count=count,
        )
        return count

    async def evict_expired(self) -> int:
        """Drop in-process windows that have elapsed."""
        async with self._lock:
            now = self._clock()
            stale = [
                key
                for key, (start, _, window) in self._local.items()
                if now - start >= window
            ]
            for key in stale:
                self._local.pop(key, None)
        return len(stale)
