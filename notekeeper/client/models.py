from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ClientUser(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    email_verified: bool = False
    created_at: Optional[datetime] = None


class ClientSession(BaseModel):
    """Session kept in secure storage and mirrored into AuthState."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    token: str = Field(..., min_length=1)
    token_type: str = "bearer"
    expires_at: datetime
    user: ClientUser

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now
