"""Unit tests for TokenService.

Covers:
- Session issue / validate / revoke
- Bulk revocation with a cut-off instant
- Single-use token replacement and one-shot consumption
- Atomicity of consumption and its side effect
"""

from datetime import datetime, timedelta, timezone

import pytest

from notekeeper.service.errors import AuthenticationError, TokenConsumptionError
from notekeeper.service.tokens import TokenService, hash_token
from notekeeper.storage.memory import MemoryStore
from notekeeper.storage.models import TokenPurpose


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(store, clock):
    return TokenService(store, session_ttl_minutes=60, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("tokens@example.com", "hash")


class TestSessions:
    def test_issued_token_validates(self, tokens, user):
        issued = tokens.issue_session(user.id)

        session = tokens.validate_session(issued.token)

        assert session.user_id == user.id
        assert session.id == issued.session.id

    def test_only_hash_is_stored(self, tokens, store, user):
        issued = tokens.issue_session(user.id)

        stored = store.sessions[issued.session.id]
        assert stored.token_hash == hash_token(issued.token)
        assert issued.token not in stored.token_hash

    def test_tokens_are_unique_and_url_safe(self, tokens, user):
        values = {tokens.issue_session(user.id).token for _ in range(20)}

        assert len(values) == 20
        for value in values:
            assert len(value) >= 43
            assert all(c.isalnum() or c in "-_" for c in value)

    def test_unknown_token_rejected(self, tokens):
        with pytest.raises(AuthenticationError) as exc_info:
            tokens.validate_session("not-a-token")
        assert exc_info.value.message == "invalid session"

    def test_empty_token_rejected(self, tokens):
        with pytest.raises(AuthenticationError):
            tokens.validate_session("")

    def test_expired_session_rejected_with_same_message(self, tokens, user, clock):
        issued = tokens.issue_session(user.id)
        clock.advance(minutes=60)

        with pytest.raises(AuthenticationError) as exc_info:
            tokens.validate_session(issued.token)
        assert exc_info.value.message == "invalid session"

    def test_session_valid_just_before_expiry(self, tokens, user, clock):
        issued = tokens.issue_session(user.id)
        clock.advance(minutes=59, seconds=59)

        assert tokens.validate_session(issued.token).id == issued.session.id

    def test_revoked_session_rejected(self, tokens, user):
        issued = tokens.issue_session(user.id)

        assert tokens.revoke_session(issued.token) is True
        with pytest.raises(AuthenticationError):
            tokens.validate_session(issued.token)

    def test_revoke_is_idempotent(self, tokens, user):
        issued = tokens.issue_session(user.id)

        assert tokens.revoke_session(issued.token) is True
        assert tokens.revoke_session(issued.token) is False
        assert tokens.revoke_session("unknown") is False

    def test_revoking_one_session_keeps_others(self, tokens, user):
        first = tokens.issue_session(user.id)
        second = tokens.issue_session(user.id)

        tokens.revoke_session(first.token)

        assert tokens.validate_session(second.token).id == second.session.id


class TestRevokeAll:
    def test_revokes_every_session_of_user(self, tokens, user):
        issued = [tokens.issue_session(user.id) for _ in range(3)]

        assert tokens.revoke_all_sessions(user.id) == 3
        for item in issued:
            with pytest.raises(AuthenticationError):
                tokens.validate_session(item.token)

    def test_later_session_survives(self, tokens, user, clock):
        old = tokens.issue_session(user.id)
        tokens.revoke_all_sessions(user.id)
        clock.advance(seconds=1)

        fresh = tokens.issue_session(user.id)

        with pytest.raises(AuthenticationError):
            tokens.validate_session(old.token)
        assert tokens.validate_session(fresh.token).id == fresh.session.id

    def test_other_users_unaffected(self, tokens, store, user):
        other = store.create_user("other@example.com", "hash")
        mine = tokens.issue_session(user.id)
        theirs = tokens.issue_session(other.id)

        tokens.revoke_all_sessions(user.id)

        with pytest.raises(AuthenticationError):
            tokens.validate_session(mine.token)
        assert tokens.validate_session(theirs.token).user_id == other.id


class TestSingleUseTokens:
    def test_consume_returns_user_once(self, tokens, user):
        token = tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=15)
        )

        assert tokens.consume_single_use_token(token, TokenPurpose.PASSWORD_RESET) == user.id
        with pytest.raises(TokenConsumptionError):
            tokens.consume_single_use_token(token, TokenPurpose.PASSWORD_RESET)

    def test_new_token_invalidates_previous(self, tokens, user):
        first = tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=15)
        )
        second = tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=15)
        )

        with pytest.raises(TokenConsumptionError):
            tokens.consume_single_use_token(first, TokenPurpose.PASSWORD_RESET)
        assert tokens.consume_single_use_token(second, TokenPurpose.PASSWORD_RESET) == user.id

    def test_purposes_do_not_retire_each_other(self, tokens, user):
        reset = tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=15)
        )
        tokens.issue_single_use_token(
            user.id, TokenPurpose.EMAIL_VERIFICATION, timedelta(minutes=15)
        )

        assert tokens.consume_single_use_token(reset, TokenPurpose.PASSWORD_RESET) == user.id

    def test_wrong_purpose_rejected(self, tokens, user):
        token = tokens.issue_single_use_token(
            user.id, TokenPurpose.EMAIL_VERIFICATION, timedelta(minutes=15)
        )

        with pytest.raises(TokenConsumptionError):
            tokens.consume_single_use_token(token, TokenPurpose.PASSWORD_RESET)
        # Failed attempt leaves the token usable for its real purpose
        assert tokens.consume_single_use_token(token, TokenPurpose.EMAIL_VERIFICATION) == user.id

    def test_expired_token_rejected(self, tokens, user, clock):
        token = tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=15)
        )
        clock.advance(minutes=15)

        with pytest.raises(TokenConsumptionError) as exc_info:
            tokens.consume_single_use_token(token, TokenPurpose.PASSWORD_RESET)
        assert exc_info.value.message == "invalid or expired token"

    def test_owner_mismatch_rejected(self, tokens, store, user):
        other = store.create_user("someone@example.com", "hash")
        token = tokens.issue_single_use_token(
            user.id, TokenPurpose.EMAIL_VERIFICATION, timedelta(minutes=15)
        )

        with pytest.raises(TokenConsumptionError):
            tokens.consume_single_use_token(
                token, TokenPurpose.EMAIL_VERIFICATION, user_id=other.id
            )

    def test_side_effect_runs_on_consume(self, tokens, store, user):
        token = tokens.issue_single_use_token(
            user.id, TokenPurpose.EMAIL_VERIFICATION, timedelta(minutes=15)
        )

        tokens.consume_single_use_token(
            token, TokenPurpose.EMAIL_VERIFICATION, on_consume=store.mark_email_verified
        )

        assert store.get_user(user.id).email_verified is True

    def test_failed_side_effect_leaves_token_unused(self, tokens, store, user):
        token = tokens.issue_single_use_token(
            user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=15)
        )

        def _boom(_user_id):
            raise RuntimeError("write failed")

        with pytest.raises(RuntimeError):
            tokens.consume_single_use_token(token, TokenPurpose.PASSWORD_RESET, on_consume=_boom)

        assert store.get_single_use_token(hash_token(token)).used is False
        assert tokens.consume_single_use_token(token, TokenPurpose.PASSWORD_RESET) == user.id


class TestPurge:
    def test_purge_drops_expired_and_revoked(self, tokens, store, user, clock):
        expired = tokens.issue_session(user.id)
        clock.advance(minutes=30)
        live = tokens.issue_session(user.id)
        revoked = tokens.issue_session(user.id)
        tokens.revoke_session(revoked.token)
        tokens.issue_single_use_token(user.id, TokenPurpose.PASSWORD_RESET, timedelta(minutes=5))
        clock.advance(minutes=30)

        removed = tokens.purge_expired()

        assert removed == 3
        assert expired.session.id not in store.sessions
        assert revoked.session.id not in store.sessions
        assert tokens.validate_session(live.token).id == live.session.id
