"""Tests for AuthController flows: ordering, in-flight guard, sign-out and rehydration."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet

from notekeeper.client.controller import (
    GENERIC_FAILURE_MESSAGE,
    LOGOUT_FAILURE_MESSAGE,
    USER_SESSION_KEY,
    AuthController,
    OperationStatus,
)
from notekeeper.client.errors import APIError, StorageError, TransportError
from notekeeper.client.models import ClientSession, ClientUser
from notekeeper.client.secure_store import SecureCredentialStore
from notekeeper.client.state import AuthState

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _session(token="tok-1", user_id="u-1", expires_in=timedelta(days=7)):
    return ClientSession(
        token=token,
        expires_at=NOW + expires_in,
        user=ClientUser(id=user_id, email=f"{user_id}@example.com"),
    )


@pytest.fixture
def store(tmp_path):
    return SecureCredentialStore(tmp_path / "credentials.bin", Fernet.generate_key())


@pytest.fixture
def api():
    return MagicMock(
        login=AsyncMock(),
        register=AsyncMock(),
        logout=AsyncMock(),
        profile=AsyncMock(),
        request_password_reset=AsyncMock(),
    )


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def state():
    return AuthState()


@pytest.fixture
def controller(api, store, state, notifier):
    return AuthController(api, store, state, notifier, clock=lambda: NOW)


class TestSignIn:
    async def test_persists_before_publishing(self, controller, api, store, state):
        api.login.return_value = _session()
        stored_when_published = []
        state.subscribe(
            lambda user, _prev: stored_when_published.append(store.get_sync(USER_SESSION_KEY)),
            selector=lambda s: s.user,
        )

        assert await controller.sign_in("u-1@example.com", "pw") is True

        assert state.user.id == "u-1"
        assert len(stored_when_published) == 1
        assert ClientSession.model_validate_json(stored_when_published[0]).token == "tok-1"
        assert controller.status("sign_in") is OperationStatus.IDLE

    async def test_api_error_message_is_shown(self, controller, api, state, notifier):
        api.login.side_effect = APIError(401, "unauthorized", "invalid email or password")

        assert await controller.sign_in("a@example.com", "bad") is False

        notifier.assert_called_once_with("invalid email or password")
        assert state.user is None
        assert controller.status("sign_in") is OperationStatus.ERROR

    async def test_transport_error_is_generic(self, controller, api, notifier):
        api.login.side_effect = TransportError("unable to reach the server")

        await controller.sign_in("a@example.com", "pw")

        notifier.assert_called_once_with(GENERIC_FAILURE_MESSAGE)

    async def test_storage_failure_does_not_publish(self, controller, api, state, notifier):
        api.login.return_value = _session()
        controller.store = MagicMock(set=AsyncMock(side_effect=StorageError("disk full")))

        assert await controller.sign_in("a@example.com", "pw") is False

        assert state.user is None
        notifier.assert_called_once_with(GENERIC_FAILURE_MESSAGE)

    async def test_second_call_while_pending_is_ignored(self, controller, api, state):
        release = asyncio.Event()

        async def slow_login(email, password):
            await release.wait()
            return _session()

        api.login.side_effect = slow_login
        first = asyncio.create_task(controller.sign_in("a@example.com", "pw"))
        await asyncio.sleep(0)
        assert controller.status("sign_in") is OperationStatus.PENDING

        assert await controller.sign_in("a@example.com", "pw") is False
        release.set()
        assert await first is True
        assert api.login.await_count == 1

    async def test_disposed_controller_does_not_publish(self, controller, api, store, state):
        release = asyncio.Event()

        async def slow_login(email, password):
            await release.wait()
            return _session()

        api.login.side_effect = slow_login
        pending = asyncio.create_task(controller.sign_in("a@example.com", "pw"))
        await asyncio.sleep(0)
        controller.dispose()
        release.set()
        await pending

        assert state.user is None
        assert await store.get(USER_SESSION_KEY) is None


class TestCreateUser:
    async def test_marks_sign_up(self, controller, api, state):
        api.register.return_value = _session(user_id="u-new")

        assert await controller.create_user("new@example.com", "pw", "pw") is True

        api.register.assert_awaited_once_with("new@example.com", "pw", "pw")
        assert state.user.id == "u-new"
        assert state.get().is_sign_up is True

    async def test_conflict_message(self, controller, api, notifier):
        api.register.side_effect = APIError(409, "conflict", "email already registered")

        assert await controller.create_user("dup@example.com", "pw", "pw") is False

        notifier.assert_called_once_with("email already registered")


class TestSignOut:
    async def test_revokes_and_clears(self, controller, api, store, state):
        api.login.return_value = _session()
        await controller.sign_in("a@example.com", "pw")

        assert await controller.sign_out() is True

        api.logout.assert_awaited_once_with("tok-1")
        assert await store.get(USER_SESSION_KEY) is None
        assert state.user is None

    async def test_server_failure_still_clears_locally(self, controller, api, store, state, notifier):
        api.login.return_value = _session()
        await controller.sign_in("a@example.com", "pw")
        api.logout.side_effect = TransportError("offline")

        assert await controller.sign_out() is False

        assert await store.get(USER_SESSION_KEY) is None
        assert state.user is None
        notifier.assert_called_once_with(LOGOUT_FAILURE_MESSAGE)

    async def test_nothing_stored_reports_failure(self, controller, api, notifier):
        assert await controller.sign_out() is False

        api.logout.assert_not_awaited()
        notifier.assert_called_once_with(LOGOUT_FAILURE_MESSAGE)

    async def test_delete_failure_keeps_user(self, controller, api, state, notifier):
        api.login.return_value = _session()
        await controller.sign_in("a@example.com", "pw")
        controller.store = MagicMock(
            get=AsyncMock(return_value=_session().model_dump_json()),
            delete=AsyncMock(side_effect=StorageError("locked")),
        )

        assert await controller.sign_out() is False

        assert state.user is not None
        notifier.assert_called_once_with(LOGOUT_FAILURE_MESSAGE)

    async def test_after_dispose_clears_state_with_storage(self, controller, api, store, state):
        api.login.return_value = _session()
        await controller.sign_in("a@example.com", "pw")
        controller.dispose()

        assert await controller.sign_out() is True

        assert await store.get(USER_SESSION_KEY) is None
        assert state.user is None


class TestPasswordResetRequest:
    async def test_generic_confirmation(self, controller, api, notifier):
        assert await controller.send_password_reset_email("who@example.com") is True

        api.request_password_reset.assert_awaited_once_with("who@example.com")
        message = notifier.call_args.args[0]
        assert "who@example.com" not in message


class TestRehydrate:
    async def test_restores_without_network(self, controller, api, store, state):
        await store.set(USER_SESSION_KEY, _session().model_dump_json())

        user = await controller.rehydrate()

        assert user.id == "u-1"
        assert state.user.id == "u-1"
        api.profile.assert_not_awaited()

    async def test_missing_session_is_signed_out(self, controller, state):
        assert await controller.rehydrate() is None
        assert state.user is None

    async def test_malformed_session_is_cleared(self, controller, store, state):
        await store.set(USER_SESSION_KEY, '{"token": ""}')

        assert await controller.rehydrate() is None

        assert await store.get(USER_SESSION_KEY) is None
        assert state.user is None

    async def test_not_json_is_cleared(self, controller, store):
        await store.set(USER_SESSION_KEY, "not json at all")

        assert await controller.rehydrate() is None
        assert await store.get(USER_SESSION_KEY) is None

    async def test_expired_session_is_cleared(self, controller, store, state):
        await store.set(USER_SESSION_KEY, _session(expires_in=timedelta(seconds=-1)).model_dump_json())

        assert await controller.rehydrate() is None
        assert await store.get(USER_SESSION_KEY) is None

    async def test_unreadable_store_is_signed_out(self, controller, state):
        controller.store = MagicMock(get=AsyncMock(side_effect=StorageError("corrupt")))

        assert await controller.rehydrate() is None
        assert state.user is None


class TestRefreshProfile:
    async def test_rejected_token_destroys_session(self, controller, api, store, state):
        await store.set(USER_SESSION_KEY, _session().model_dump_json())
        await controller.rehydrate()
        api.profile.side_effect = APIError(401, "unauthorized", "invalid session")

        assert await controller.refresh_profile() is None

        assert await store.get(USER_SESSION_KEY) is None
        assert state.user is None

    async def test_transport_error_keeps_session(self, controller, api, store, state):
        await store.set(USER_SESSION_KEY, _session().model_dump_json())
        await controller.rehydrate()
        api.profile.side_effect = TransportError("offline")

        user = await controller.refresh_profile()

        assert user.id == "u-1"
        assert await store.get(USER_SESSION_KEY) is not None
        assert state.user.id == "u-1"

    async def test_updated_profile_is_stored_and_published(self, controller, api, store, state):
        await store.set(USER_SESSION_KEY, _session().model_dump_json())
        await controller.rehydrate()
        api.profile.return_value = ClientUser(id="u-1", email="u-1@example.com", email_verified=True)

        await controller.refresh_profile()

        assert state.user.email_verified is True
        stored = ClientSession.model_validate_json(await store.get(USER_SESSION_KEY))
        assert stored.user.email_verified is True
        assert stored.token == "tok-1"

    async def test_rejected_token_after_dispose_clears_state(self, controller, api, store, state):
        await store.set(USER_SESSION_KEY, _session().model_dump_json())
        await controller.rehydrate()
        controller.dispose()
        api.profile.side_effect = APIError(401, "unauthorized", "invalid session")

        assert await controller.refresh_profile() is None

        assert await store.get(USER_SESSION_KEY) is None
        assert state.user is None
