from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from notekeeper.config import Settings
from notekeeper.logging import fingerprint, get_logger
from notekeeper.service.email import EmailService
from notekeeper.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ValidationError,
)
from notekeeper.service.tokens import IssuedToken, TokenService, hash_token
from notekeeper.storage.errors import ConstraintViolation
from notekeeper.storage.models import Session, TokenPurpose, User

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "invalid email or password"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header, or None."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class UserStore(Protocol):
    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> User: ...

    def mark_email_verified(self, user_id: str) -> User: ...

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]: ...


@dataclass
class AuthContext:
    """The caller behind a validated bearer token."""

    user_id: str
    session_id: str
    token: str


class AuthService:
    """Account flows built on TokenService: register, login, logout, reset and verification."""

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.email = email
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash("notekeeper-unknown-user")
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: Optional[User], password: str) -> bool:
        stored = user.password_hash if user else self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(stored, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            matched = False
        if user is None:
            return False
        if not matched:
            self.logger.warning("password_verification_failed", user_id=user.id)
        return matched

    # sessions
    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        session = self.tokens.validate_session(token)
        return AuthContext(user_id=session.user_id, session_id=session.id, token=token)

    async def register(self, email: str, password: str) -> Tuple[User, IssuedToken]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        password_hash = await asyncio.to_thread(self._hash_password, password)
        try:
            user = self.store.create_user(email, password_hash)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        issued = self.tokens.issue_session(user.id)
        self.logger.info("user_registered", user_id=user.id, email_hash=fingerprint(email))
        return user, issued

    async def login(self, email: str, password: str) -> Tuple[User, IssuedToken]:
        user = self.store.get_user_by_email(email)
        matched = await asyncio.to_thread(self.verify_password, user, password)
        if not user or not matched:
            self.logger.info("login_failed", email_hash=fingerprint(email))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        issued = self.tokens.issue_session(user.id)
        return user, issued

    def logout(self, ctx: AuthContext, target_token: Optional[str] = None) -> bool:
        """Revoke the caller's session, or another session the caller owns."""
        if target_token and target_token != ctx.token:
            target = self.store.get_session_by_hash(hash_token(target_token))
            if not target or target.user_id != ctx.user_id:
                raise ForbiddenError("cannot revoke other user sessions")
            return self.tokens.revoke_session(target_token)
        return self.tokens.revoke_session(ctx.token)

    def logout_all(self, ctx: AuthContext) -> int:
        return self.tokens.revoke_all_sessions(ctx.user_id)

    def get_profile(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            # Session outlived its user
            raise AuthenticationError("invalid session")
        return user

    # password reset
    async def request_password_reset(self, email: str) -> None:
        """Send a reset link when the account exists; callers see the same outcome either way."""
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=fingerprint(email))
            return
        ttl = self.settings.password_reset_ttl_minutes
        token = self.tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=ttl)
        )
        sent = await self.email.send_password_reset_async(user.email, token, expiry_minutes=ttl)
        self.logger.info("password_reset_requested", user_id=user.id, delivered=sent)

    async def complete_password_reset(self, token: str, new_password: str) -> str:
        password_hash = await asyncio.to_thread(self._hash_password, new_password)

        def _apply(user_id: str) -> None:
            self.store.update_password(user_id, password_hash)

        user_id = self.tokens.consume_single_use_token(
            token, TokenPurpose.PASSWORD_RESET, on_consume=_apply
        )
        revoked = self.tokens.revoke_all_sessions(user_id)
        self.logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)
        return user_id

    # email verification
    async def request_email_verification(self, ctx: AuthContext) -> bool:
        """Send a verification link. Returns False when the address is already verified."""
        user = self.get_profile(ctx)
        if user.email_verified:
            return False
        ttl = self.settings.email_verification_ttl_minutes
        token = self.tokens.issue_single_use_token(
            user.id, TokenPurpose.EMAIL_VERIFICATION, timedelta(minutes=ttl)
        )
        sent = await self.email.send_email_verification_async(
            user.email, token, expiry_minutes=ttl
        )
        self.logger.info("email_verification_requested", user_id=user.id, delivered=sent)
        return True

    def complete_email_verification(self, ctx: AuthContext, token: str) -> User:
        self.tokens.consume_single_use_token(
            token,
            TokenPurpose.EMAIL_VERIFICATION,
            user_id=ctx.user_id,
            on_consume=self.store.mark_email_verified,
        )
        self.logger.info("email_verified", user_id=ctx.user_id)
        return self.get_profile(ctx)

    @staticmethod
    def ensure_passwords_match(password: str, confirm_password: str) -> None:
        if password != confirm_password:
            raise ValidationError(
                "passwords do not match", detail={"field": "confirmPassword"}
            )
