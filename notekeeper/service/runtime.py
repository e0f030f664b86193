from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from notekeeper.config import Settings, get_settings, reset_settings_cache
from notekeeper.logging import get_logger
from notekeeper.service.auth import AuthService
from notekeeper.service.email import EmailService
from notekeeper.service.rate_limit import RateLimiter, RateLimitPolicy, RateLimitScope
from notekeeper.service.tokens import TokenService
from notekeeper.storage.memory import MemoryStore
from notekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)

AUTH_POLICY = "auth"
PASSWORD_RESET_POLICY = "password-reset"
PASSWORD_RESET_EMAIL_POLICY = "password-reset-email"
EMAIL_VERIFICATION_POLICY = "email-verification"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_policies(settings: Settings) -> Dict[str, RateLimitPolicy]:
    """Rate-limit policies for the guarded auth routes."""
    return {
        AUTH_POLICY: RateLimitPolicy(
            name=AUTH_POLICY,
            max_requests=settings.auth_rate_limit_max,
            window_seconds=settings.auth_rate_limit_window_seconds,
            scope=RateLimitScope.IP_ROUTE,
        ),
        # Reset links delivered per recipient address; every delivery counts
        PASSWORD_RESET_EMAIL_POLICY: RateLimitPolicy(
            name=PASSWORD_RESET_EMAIL_POLICY,
            max_requests=settings.reset_rate_limit_max,
            window_seconds=settings.reset_rate_limit_window_seconds,
        ),
        PASSWORD_RESET_POLICY: RateLimitPolicy(
            name=PASSWORD_RESET_POLICY,
            max_requests=settings.reset_rate_limit_max,
            window_seconds=settings.reset_rate_limit_window_seconds,
            count_failed_only=True,
            scope=RateLimitScope.BEARER,
        ),
        EMAIL_VERIFICATION_POLICY: RateLimitPolicy(
            name=EMAIL_VERIFICATION_POLICY,
            max_requests=settings.reset_rate_limit_max,
            window_seconds=settings.reset_rate_limit_window_seconds,
            count_failed_only=True,
            scope=RateLimitScope.BEARER,
        ),
    }


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            store_path=self.settings.store_path,
        )
        self.store = MemoryStore(fs_root=None if self.settings.test_mode else self.settings.store_path)

        self.cache: RedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
                message="Rate-limit counters are process-local under this mode.",
            )

        self.tokens = TokenService(
            self.store, session_ttl_minutes=self.settings.session_ttl_minutes
        )
        self.rate_limiter = RateLimiter(self.cache)
        self.rate_limit_policies = build_policies(self.settings)
        self.email = EmailService(
            smtp_host=None if self.settings.test_mode else self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(self.store, self.tokens, self.email, self.settings)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            policies=sorted(self.rate_limit_policies),
        )

    async def cleanup_expired_state(self) -> int:
        """Purge expired sessions, single-use tokens and rate-limit windows."""
        purged = self.tokens.purge_expired()
        evicted = await self.rate_limiter.evict_expired()
        if purged or evicted:
            logger.debug("state_cleanup", purged=purged, evicted_windows=evicted)
        return purged + evicted


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
