"""Tests for password reset tokens and email verification codes."""

from datetime import timedelta

import pytest

from tokenwarden.service.errors import (
    CredentialExpiredError,
    CredentialNotFoundError,
    CredentialUsedError,
    TooManyAttemptsError,
)
from tokenwarden.service.secondary import SecondaryCredentialManager, generate_numeric_code
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.models import CredentialKind, UserStatus

RESET = CredentialKind.PASSWORD_RESET
VERIFY = CredentialKind.EMAIL_VERIFICATION


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("pending@example.com")


@pytest.fixture
def manager(store, clock):
    return SecondaryCredentialManager(store, clock=clock)


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class TestIssue:
    def test_codes_are_six_zero_padded_digits(self):
        for _ in range(50):
            code = generate_numeric_code()
            assert len(code) == 6 and code.isdigit()

    def test_verification_code_defaults(self, manager, user, clock):
        code = manager.issue(user.id, VERIFY)
        assert code.secret.isdigit() and len(code.secret) == 6
        assert code.expires_at == clock() + timedelta(minutes=15)
        assert code.attempts == 0 and code.used is False

    def test_reset_token_defaults(self, manager, user, clock):
        token = manager.issue(user.id, RESET)
        assert len(token.secret) >= 43
        assert token.expires_at == clock() + timedelta(hours=1)

    def test_explicit_ttl(self, manager, user, clock):
        token = manager.issue(user.id, RESET, ttl=timedelta(minutes=5))
        assert token.expires_at == clock() + timedelta(minutes=5)


class TestResetTokens:
    def test_validate_is_read_only(self, manager, user, store):
        token = manager.issue(user.id, RESET)
        assert manager.validate(token.secret, RESET) is True
        assert manager.validate(token.secret, RESET) is True
        assert store.get_secondary_by_secret(token.secret, RESET).used is False

    def test_consume_once(self, manager, user):
        token = manager.issue(user.id, RESET)
        consumed = manager.consume(token.secret, RESET)
        assert consumed.user_id == user.id
        assert manager.validate(token.secret, RESET) is False
        with pytest.raises(CredentialUsedError):
            manager.consume(token.secret, RESET)

    def test_expired_token(self, manager, user, clock):
        token = manager.issue(user.id, RESET)
        clock.advance(timedelta(hours=1))
        assert manager.validate(token.secret, RESET) is False
        with pytest.raises(CredentialExpiredError):
            manager.consume(token.secret, RESET)

    def test_unknown_token(self, manager):
        assert manager.validate("missing", RESET) is False
        assert manager.validate("", RESET) is False
        with pytest.raises(CredentialNotFoundError) as exc_info:
            manager.consume("missing", RESET)
        assert exc_info.value.message == "invalid or expired token"

    def test_kinds_do_not_cross(self, manager, user):
        token = manager.issue(user.id, RESET)
        assert manager.validate(token.secret, VERIFY, user_id=user.id) is False


class TestVerificationCodes:
    def test_consume_activates_account(self, manager, user, store):
        code = manager.issue(user.id, VERIFY)
        manager.consume(code.secret, VERIFY, user_id=user.id)

        activated = store.get_user(user.id)
        assert activated.status == UserStatus.ACTIVE
        assert activated.is_verified is True

    def test_second_consume_reports_used(self, manager, user):
        code = manager.issue(user.id, VERIFY)
        manager.consume(code.secret, VERIFY, user_id=user.id)
        with pytest.raises(CredentialUsedError):
            manager.consume(code.secret, VERIFY, user_id=user.id)

    def test_correct_but_expired_code(self, manager, user, clock):
        code = manager.issue(user.id, VERIFY)
        clock.advance(timedelta(minutes=15))
        with pytest.raises(CredentialExpiredError):
            manager.consume(code.secret, VERIFY, user_id=user.id)

    def test_mismatch_persists_attempts(self, manager, user, store):
        code = manager.issue(user.id, VERIFY)
        with pytest.raises(CredentialNotFoundError) as exc_info:
            manager.consume(_wrong(code.secret), VERIFY, user_id=user.id)
        assert exc_info.value.message == "invalid or expired code"
        assert store.get_latest_secondary_for_user(user.id, VERIFY).attempts == 1

    def test_attempt_cap_blocks_correct_code(self, manager, user, store):
        code = manager.issue(user.id, VERIFY)
        with pytest.raises(CredentialNotFoundError):
            manager.consume(_wrong(code.secret), VERIFY, user_id=user.id)
        with pytest.raises(CredentialNotFoundError):
            manager.consume(_wrong(code.secret), VERIFY, user_id=user.id)
        with pytest.raises(TooManyAttemptsError):
            manager.consume(_wrong(code.secret), VERIFY, user_id=user.id)
        with pytest.raises(TooManyAttemptsError):
            manager.consume(code.secret, VERIFY, user_id=user.id)
        assert store.get_user(user.id).status == UserStatus.PENDING_VERIFICATION

    def test_only_latest_code_counts(self, manager, user):
        old = manager.issue(user.id, VERIFY)
        new = manager.issue(user.id, VERIFY)
        if old.secret != new.secret:
            with pytest.raises(CredentialNotFoundError):
                manager.consume(old.secret, VERIFY, user_id=user.id)
        manager.consume(new.secret, VERIFY, user_id=user.id)

    def test_code_requires_owner(self, manager, user):
        code = manager.issue(user.id, VERIFY)
        assert manager.validate(code.secret, VERIFY) is False
        with pytest.raises(CredentialNotFoundError):
            manager.consume(code.secret, VERIFY)
