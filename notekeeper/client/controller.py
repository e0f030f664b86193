from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from notekeeper.client.api import ApiClient
from notekeeper.client.errors import APIError, ClientError, StorageError
from notekeeper.client.models import ClientSession, ClientUser
from notekeeper.client.secure_store import SecureCredentialStore
from notekeeper.client.state import AuthState
from notekeeper.logging import get_logger
from notekeeper.validation import Invalid, validate_json

logger = get_logger(__name__)

USER_SESSION_KEY = "user_session"

GENERIC_FAILURE_MESSAGE = "Something went wrong"
LOGOUT_FAILURE_MESSAGE = "Failed to logout"
PASSWORD_RESET_SENT_MESSAGE = "If an account exists for that email, a reset link is on its way"


class OperationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    ERROR = "error"


class AuthController:
    """Sign-in, sign-up, sign-out and password reset flows for one screen.

    The durable session is always written to secure storage before the user is
    published to ``AuthState``. Each flow has its own status; calling a flow
    while it is already pending is ignored and returns ``False``. After
    ``dispose()`` results of in-flight calls are dropped instead of published.
    """

    def __init__(
        self,
        api: ApiClient,
        store: SecureCredentialStore,
        state: AuthState,
        notifier: Optional[Callable[[str], None]] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.api = api
        self.store = store
        self.state = state
        self._notifier = notifier
        self._clock = clock
        self._status: Dict[str, OperationStatus] = {}
        self._disposed = False

    def status(self, operation: str) -> OperationStatus:
        return self._status.get(operation, OperationStatus.IDLE)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        self._disposed = True

    def _notify(self, message: str) -> None:
        if self._notifier is not None:
            self._notifier(message)

    @staticmethod
    def _message_for(exc: ClientError) -> str:
        if isinstance(exc, APIError):
            return exc.message
        return GENERIC_FAILURE_MESSAGE

    async def _run(
        self,
        operation: str,
        action: Callable[[], Awaitable[None]],
        failure_message: Optional[str] = None,
    ) -> bool:
        if self.status(operation) is OperationStatus.PENDING:
            logger.debug("auth_operation_ignored", operation=operation, reason="in_flight")
            return False
        self._status[operation] = OperationStatus.PENDING
        succeeded = False
        try:
            await action()
            succeeded = True
        except ClientError as exc:
            logger.warning(
                "auth_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                status=getattr(exc, "status", None),
            )
            self._notify(failure_message or self._message_for(exc))
        finally:
            self._status[operation] = OperationStatus.IDLE if succeeded else OperationStatus.ERROR
        return succeeded

    def _publish(self, user: Optional[ClientUser], is_sign_up: Optional[bool] = None) -> None:
        # Clears still apply after dispose; only new users are dropped
        if self._disposed and user is not None:
            logger.debug("auth_state_update_dropped", reason="disposed")
            return
        self.state.set_user(user, is_sign_up)

    async def _establish(self, session: ClientSession, *, is_sign_up: bool) -> None:
        if self._disposed:
            logger.debug("auth_session_dropped", reason="disposed")
            return
        await self.store.set(USER_SESSION_KEY, session.model_dump_json())
        self._publish(session.user, is_sign_up)

    async def sign_in(self, email: str, password: str) -> bool:
        async def _action() -> None:
            session = await self.api.login(email, password)
            await self._establish(session, is_sign_up=False)

        return await self._run("sign_in", _action)

    async def create_user(self, email: str, password: str, confirm_password: str) -> bool:
        async def _action() -> None:
            session = await self.api.register(email, password, confirm_password)
            await self._establish(session, is_sign_up=True)

        return await self._run("create_user", _action)

    async def sign_out(self) -> bool:
        """End the session on the server, then remove it locally.

        The local copy is removed even when the server call fails. The user is
        cleared as soon as no durable token remains; any failure along the way
        is reported as a single logout failure.
        """

        async def _action() -> None:
            server_error: Optional[ClientError] = None
            session = await self._load_session()
            if session is not None:
                try:
                    await self.api.logout(session.token)
                except ClientError as exc:
                    server_error = exc
            removed = await self.store.delete(USER_SESSION_KEY)
            self._publish(None)
            if server_error is not None:
                raise server_error
            if not removed:
                raise StorageError("no stored session to remove")

        return await self._run("sign_out", _action, failure_message=LOGOUT_FAILURE_MESSAGE)

    async def send_password_reset_email(self, email: str) -> bool:
        async def _action() -> None:
            await self.api.request_password_reset(email)
            self._notify(PASSWORD_RESET_SENT_MESSAGE)

        return await self._run("send_password_reset_email", _action)

    async def _load_session(self) -> Optional[ClientSession]:
        try:
            raw = await self.store.get(USER_SESSION_KEY)
        except StorageError as exc:
            logger.warning("stored_session_unreadable", error=exc.message)
            return None
        if raw is None:
            return None
        result = validate_json(ClientSession, raw)
        if isinstance(result, Invalid):
            logger.info("stored_session_invalid", reasons=list(result.reasons))
            return None
        return result.value

    async def _discard_session(self, reason: str) -> None:
        logger.info("stored_session_discarded", reason=reason)
        try:
            await self.store.delete(USER_SESSION_KEY)
        except StorageError as exc:
            logger.warning("stored_session_delete_failed", error=exc.message)
        self._publish(None)

    async def rehydrate(self) -> Optional[ClientUser]:
        """Restore the user from secure storage without touching the network.

        Missing, malformed or expired stored sessions mean "signed out" and the
        stored key is cleared.
        """
        try:
            raw = await self.store.get(USER_SESSION_KEY)
        except StorageError as exc:
            logger.warning("session_rehydrate_failed", error=exc.message)
            self._publish(None)
            return None
        if raw is None:
            self._publish(None)
            return None
        result = validate_json(ClientSession, raw)
        if isinstance(result, Invalid):
            logger.info("stored_session_invalid", reasons=list(result.reasons))
            await self._discard_session("malformed")
            return None
        session = result.value
        if session.is_expired(self._clock()):
            await self._discard_session("expired")
            return None
        self._publish(session.user)
        logger.info("session_rehydrated", user_id=session.user.id)
        return session.user

    async def refresh_profile(self) -> Optional[ClientUser]:
        """Re-fetch the profile for the stored session.

        A 401 means the server no longer accepts the token, so the session is
        destroyed. Transport failures keep the current session as is.
        """
        session = await self._load_session()
        if session is None:
            return None
        try:
            user = await self.api.profile(session.token)
        except APIError as exc:
            if exc.status == 401:
                await self._discard_session("rejected")
                return None
            logger.warning("profile_refresh_failed", status=exc.status, code=exc.code)
            return session.user
        except ClientError as exc:
            logger.warning("profile_refresh_failed", error_type=type(exc).__name__)
            return session.user
        if user != session.user and not self._disposed:
            await self.store.set(
                USER_SESSION_KEY, session.model_copy(update={"user": user}).model_dump_json()
            )
            self._publish(user)
        return user
