from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    """What a single-use token may be exchanged for."""

    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    password_updated_at: Optional[datetime] = None


@dataclass
class Session:
    """A server-side session; only the hash of its bearer token is kept."""

    id: str
    user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        now: datetime | None = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
        )

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.revoked and self.expires_at > (now or utcnow())


@dataclass
class SingleUseToken:
    token_hash: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_consumable(self, purpose: TokenPurpose, now: datetime | None = None) -> bool:
        return (
            not self.used
            and self.purpose == purpose
            and self.expires_at > (now or utcnow())
        )
