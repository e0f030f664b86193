from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from notekeeper.logging import fingerprint, get_logger
from notekeeper.service.errors import AuthenticationError, TokenConsumptionError
from notekeeper.storage.models import Session, SingleUseToken, TokenPurpose, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32
INVALID_SESSION_MESSAGE = "invalid session"


class TokenStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]: ...

    def revoke_session_by_hash(self, token_hash: str, *, now: datetime | None = None) -> bool: ...

    def revoke_user_sessions(self, user_id: str, *, issued_before: datetime) -> int: ...

    def replace_single_use_token(self, token: SingleUseToken) -> int: ...

    def consume_single_use_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        *,
        now: datetime,
        user_id: str | None = None,
        on_consume: Callable[[str], None] | None = None,
    ) -> Optional[SingleUseToken]: ...

    def purge_expired(self, now: datetime | None = None) -> int: ...


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


@dataclass
class IssuedToken:
    """Plaintext bearer token paired with the stored session; the plaintext is never kept."""

    token: str
    session: Session


class TokenService:
    """Mints, validates and revokes opaque tokens.

    Session tokens are bearer secrets handed to clients once; single-use
    tokens back password reset and email verification. Only SHA-256 digests
    of either kind reach the store.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        session_ttl_minutes: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.session_ttl_minutes = session_ttl_minutes
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def issue_session(self, user_id: str) -> IssuedToken:
        token = generate_token()
        session = Session.new(
            user_id, hash_token(token), self.session_ttl_minutes, now=self._now()
        )
        self.store.insert_session(session)
        logger.info("session_issued", user_id=user_id, session_id=session.id)
        return IssuedToken(token=token, session=session)

    def validate_session(self, token: Optional[str]) -> Session:
        """Return the live session for ``token`` or raise AuthenticationError.

        Unknown, revoked and expired tokens are indistinguishable to callers;
        the reason only shows up in logs.
        """
        if not token:
            raise AuthenticationError(INVALID_SESSION_MESSAGE)
        session = self.store.get_session_by_hash(hash_token(token))
        reason = None
        if session is None:
            reason = "not_found"
        elif session.revoked:
            reason = "revoked"
        elif session.expires_at <= self._now():
            reason = "expired"
        if reason is not None:
            logger.info(
                "session_validation_failed",
                reason=reason,
                session_id=session.id if session else None,
            )
            raise AuthenticationError(INVALID_SESSION_MESSAGE)
        return session

    def revoke_session(self, token: str) -> bool:
        """Revoke the session behind ``token``; unknown or already revoked tokens are a no-op."""
        revoked = self.store.revoke_session_by_hash(hash_token(token), now=self._now())
        logger.info("session_revoked", changed=revoked)
        return revoked

    def revoke_all_sessions(self, user_id: str) -> int:
        cutoff = self._now()
        count = self.store.revoke_user_sessions(user_id, issued_before=cutoff)
        logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    def issue_single_use_token(
        self, user_id: str, purpose: TokenPurpose, ttl: timedelta
    ) -> str:
        token = generate_token()
        record = SingleUseToken(
            token_hash=hash_token(token),
            user_id=user_id,
            purpose=purpose,
            expires_at=self._now() + ttl,
            created_at=self._now(),
        )
        retired = self.store.replace_single_use_token(record)
        logger.info(
            "single_use_token_issued",
            user_id=user_id,
            purpose=purpose.value,
            retired=retired,
        )
        return token

    def consume_single_use_token(
        self,
        token: str,
        purpose: TokenPurpose,
        *,
        on_consume: Callable[[str], None] | None = None,
        user_id: str | None = None,
    ) -> str:
        """Consume ``token`` once and return the owning user id.

        ``on_consume`` runs inside the same store lock hold as the used flag;
        if it raises, the token remains unused and the error propagates.
        """
        record = None
        if token:
            record = self.store.consume_single_use_token(
                hash_token(token),
                purpose,
                now=self._now(),
                user_id=user_id,
                on_consume=on_consume,
            )
        if record is None:
            logger.warning(
                "single_use_token_rejected",
                purpose=purpose.value,
                token_fingerprint=fingerprint(token) if token else None,
            )
            raise TokenConsumptionError()
        logger.info("single_use_token_consumed", user_id=record.user_id, purpose=purpose.value)
        return record.user_id

    def purge_expired(self) -> int:
        return self.store.purge_expired(self._now())
