from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from notekeeper.logging import get_logger
from notekeeper.storage.errors import ConstraintViolation, UnknownRecord
from notekeeper.storage.models import (
    Session,
    SingleUseToken,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for users, sessions and single-use tokens.

    All reads and writes go through ``_data_lock`` so compound operations
    (revoke-all, token replacement, token consumption) are atomic with respect
    to concurrent requests. When ``fs_root`` is given the state is also written
    to ``<fs_root>/state/notekeeper_store.json`` after every mutation.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._sessions_by_hash: Dict[str, str] = {}
        self.tokens: Dict[str, SingleUseToken] = {}
        # RLock so side effects run during token consumption can re-enter
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, password_hash=password_hash)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_password(self, user_id: str, password_hash: str) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise UnknownRecord("user not found", {"user_id": user_id})
            user.password_hash = password_hash
            user.password_updated_at = utcnow()
            self._persist_state()
            return user

    def mark_email_verified(self, user_id: str) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise UnknownRecord("user not found", {"user_id": user_id})
            user.email_verified = True
            self._persist_state()
            return user

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.token_hash in self._sessions_by_hash:
                raise ConstraintViolation("duplicate session token", {"field": "token_hash"})
            self.sessions[session.id] = session
            self._sessions_by_hash[session.token_hash] = session.id
            self._persist_state()
            return session

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._sessions_by_hash.get(token_hash)
            return self.sessions.get(session_id) if session_id else None

    def revoke_session_by_hash(self, token_hash: str, *, now: datetime | None = None) -> bool:
        """Mark one session revoked. Returns False when nothing changed."""
        with self._data_lock:
            session = self.get_session_by_hash(token_hash)
            if session is None or session.revoked:
                return False
            session.revoked = True
            session.revoked_at = now or utcnow()
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str, *, issued_before: datetime) -> int:
        """Revoke every live session of ``user_id`` issued at or before the cut-off."""
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if (
                    session.user_id == user_id
                    and not session.revoked
                    and session.issued_at <= issued_before
                ):
                    session.revoked = True
                    session.revoked_at = issued_before
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # single-use tokens
    def replace_single_use_token(self, token: SingleUseToken) -> int:
        """Insert ``token`` after retiring every unused token of the same user and purpose."""
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            retired = 0
            for existing in self.tokens.values():
                if (
                    existing.user_id == token.user_id
                    and existing.purpose == token.purpose
                    and not existing.used
                ):
                    existing.used = True
                    retired += 1
            self.tokens[token.token_hash] = token
            self._persist_state()
            return retired

    def get_single_use_token(self, token_hash: str) -> Optional[SingleUseToken]:
        with self._data_lock:
            return self.tokens.get(token_hash)

    def consume_single_use_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        *,
        now: datetime,
        user_id: str | None = None,
        on_consume: Callable[[str], None] | None = None,
    ) -> Optional[SingleUseToken]:
        """Mark a token used and apply ``on_consume`` under one lock hold.

        Returns None without changing anything when the token cannot be
        consumed. If ``on_consume`` raises, the token stays unused.
        """
        with self._data_lock:
            record = self.tokens.get(token_hash)
            if record is None or not record.is_consumable(purpose, now):
                return None
            if user_id is not None and record.user_id != user_id:
                return None
            if on_consume is not None:
                on_consume(record.user_id)
            record.used = True
            self._persist_state()
            return record

    def purge_expired(self, now: datetime | None = None) -> int:
        """Drop expired or revoked sessions and expired or used tokens."""
        now = now or utcnow()
        with self._data_lock:
            stale_sessions = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_active(now)
            ]
            for sid in stale_sessions:
                sess = self.sessions.pop(sid)
                self._sessions_by_hash.pop(sess.token_hash, None)
            stale_tokens = [
                digest
                for digest, tok in self.tokens.items()
                if tok.expires_at <= now or tok.used
            ]
            for digest in stale_tokens:
                self.tokens.pop(digest, None)
            removed = len(stale_sessions) + len(stale_tokens)
            if removed:
                self._persist_state()
            return removed

    def ping(self) -> bool:
        with self._data_lock:
            return True

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "notekeeper_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._sessions_by_hash = {s.token_hash: s.id for s in self.sessions.values()}
        self.tokens = {
            t["token_hash"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.logger.info(
            "store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            tokens=len(self.tokens),
        )
        return True

    @staticmethod
    def _dt(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "email_verified": user.email_verified,
            "created_at": self._dt(user.created_at),
            "password_updated_at": self._dt(user.password_updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
            password_updated_at=self._parse_dt(data.get("password_updated_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_hash": session.token_hash,
            "issued_at": self._dt(session.issued_at),
            "expires_at": self._dt(session.expires_at),
            "revoked": session.revoked,
            "revoked_at": self._dt(session.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            issued_at=self._parse_dt(data["issued_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._parse_dt(data.get("revoked_at")),
        )

    def _serialize_token(self, token: SingleUseToken) -> dict:
        return {
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "purpose": token.purpose.value,
            "expires_at": self._dt(token.expires_at),
            "used": token.used,
            "created_at": self._dt(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> SingleUseToken:
        return SingleUseToken(
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            purpose=TokenPurpose(data["purpose"]),
            expires_at=self._parse_dt(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
        )
