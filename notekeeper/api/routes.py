from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response

from notekeeper.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    UserResponse,
)
from notekeeper.logging import fingerprint, get_logger
from notekeeper.service.auth import AuthContext, extract_bearer
from notekeeper.service.errors import AuthenticationError, RateLimitExceeded, ServiceError
from notekeeper.service.rate_limit import RateLimitDecision, RateLimitPolicy, RateLimitScope
from notekeeper.service.runtime import (
    AUTH_POLICY,
    EMAIL_VERIFICATION_POLICY,
    PASSWORD_RESET_EMAIL_POLICY,
    PASSWORD_RESET_POLICY,
    get_runtime,
)
from notekeeper.service.tokens import IssuedToken
from notekeeper.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


class RateLimitGuard:
    """Result of the pre-handler rate-limit check for one request.

    Handlers on failures-only routes run their work inside ``async with
    guard:`` so a ServiceError raised there is counted before it propagates.
    """

    def __init__(self, policy: RateLimitPolicy, key: str, decision: RateLimitDecision):
        self.policy = policy
        self.key = key
        self.info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)

    async def __aenter__(self) -> "RateLimitGuard":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if isinstance(exc, ServiceError) and self.policy.count_failed_only:
            await get_runtime().rate_limiter.record_failure(self.key, self.policy)
        return False


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _session_user_id(authorization: Optional[str]) -> Optional[str]:
    """User id behind a live bearer session, or None when the header is absent or invalid."""
    bearer = extract_bearer(authorization)
    if not bearer:
        return None
    try:
        return get_runtime().tokens.validate_session(bearer).user_id
    except AuthenticationError:
        return None


def rate_limited(policy_name: str) -> Callable:
    """Build a dependency that enforces ``policy_name`` before the body is handled."""

    async def _dependency(
        request: Request,
        response: Response,
        authorization: Optional[str] = Header(None),
    ) -> RateLimitGuard:
        runtime = get_runtime()
        policy = runtime.rate_limit_policies[policy_name]
        user_id = None
        if policy.scope == RateLimitScope.BEARER:
            user_id = _session_user_id(authorization)
        key = runtime.rate_limiter.key_for(
            policy, ip=_client_ip(request), route=request.url.path, user_id=user_id
        )
        decision = await runtime.rate_limiter.check(key, policy)
        guard = RateLimitGuard(policy, key, decision)
        if not decision.allowed:
            raise RateLimitExceeded(
                "too many requests, try again later",
                retry_after=decision.reset_seconds,
                limit=decision.limit,
            )
        guard.info.apply_headers(response)
        return guard

    return _dependency


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


def _auth_payload(user: User, issued: IssuedToken) -> AuthResponse:
    return AuthResponse(
        token=issued.token,
        expires_at=issued.session.expires_at,
        user=UserResponse.from_user(user),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    guard: RateLimitGuard = Depends(rate_limited(AUTH_POLICY)),
):
    """Create an account and open its first session.

    Raises:
        400: If the body is invalid or the passwords differ
        403: If signup is disabled
        409: If the email is already registered
        429: If the caller exceeded the sign-up rate limit
    """
    runtime = get_runtime()
    async with guard:
        runtime.auth.ensure_passwords_match(body.password, body.confirm_password)
        user, issued = await runtime.auth.register(body.email, body.password)
    return Envelope(status="ok", data=_auth_payload(user, issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    guard: RateLimitGuard = Depends(rate_limited(AUTH_POLICY)),
):
    """Exchange email and password for a bearer session token.

    Every attempt counts against the caller's window, successful or not.
    """
    runtime = get_runtime()
    async with guard:
        user, issued = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_payload(user, issued))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    target = body.token if body else None
    runtime.auth.logout(principal, target)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_auth_context)):
    """Revoke every session of the caller identified by the bearer token."""
    revoked = get_runtime().auth.logout_all(principal)
    logger.info("logout_all_completed", user_id=principal.user_id, revoked=revoked)
    return Envelope(status="ok", data={"message": "sessions revoked", "revoked": revoked})


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_auth_context)):
    user = get_runtime().auth.get_profile(principal)
    return Envelope(status="ok", data=UserResponse.from_user(user))


async def _deliver_reset_link(email: str) -> None:
    runtime = get_runtime()
    policy = runtime.rate_limit_policies[PASSWORD_RESET_EMAIL_POLICY]
    decision = await runtime.rate_limiter.check(
        runtime.rate_limiter.recipient_key(policy, email), policy
    )
    if not decision.allowed:
        logger.info("password_reset_throttled", email_hash=fingerprint(email))
        return
    await runtime.auth.request_password_reset(email)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest,
    background_tasks: BackgroundTasks,
    guard: RateLimitGuard = Depends(rate_limited(PASSWORD_RESET_POLICY)),
):
    """Queue a reset link for ``email``.

    The account lookup and delivery run after the response is sent, so the
    answer and its timing do not depend on whether the account exists.
    Deliveries per recipient are capped separately from the caller's limit.
    """
    background_tasks.add_task(_deliver_reset_link, body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    token: str,
    body: PasswordResetConfirm,
    guard: RateLimitGuard = Depends(rate_limited(PASSWORD_RESET_POLICY)),
):
    """Set a new password with a reset token; all existing sessions are revoked."""
    runtime = get_runtime()
    async with guard:
        runtime.auth.ensure_passwords_match(body.password, body.confirm_password)
        await runtime.auth.complete_password_reset(token, body.password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/email-verification", response_model=Envelope, tags=["auth"])
async def email_verification(
    body: Optional[EmailVerificationRequest] = None,
    guard: RateLimitGuard = Depends(rate_limited(EMAIL_VERIFICATION_POLICY)),
    authorization: Optional[str] = Header(None),
):
    """Send a verification link, or confirm one when ``token`` is supplied.

    The user is derived from the bearer token; a token minted for another
    account is rejected.
    """
    runtime = get_runtime()
    async with guard:
        principal = runtime.auth.authenticate(authorization)
        if body is None or not body.token:
            sent = await runtime.auth.request_email_verification(principal)
            return Envelope(status="ok", data={"status": "sent" if sent else "verified"})
        user = runtime.auth.complete_email_verification(principal, body.token)
    return Envelope(status="ok", data={"status": "verified", "user": UserResponse.from_user(user)})
