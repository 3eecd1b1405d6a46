"""Unit tests for the account use cases in AuthService."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from tokenwarden.service.auth import AuthService
from tokenwarden.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    CredentialUsedError,
    ForbiddenError,
    NotFoundError,
    RefreshTokenRevokedError,
    ValidationError,
)
from tokenwarden.service.lockout import LockoutGuard
from tokenwarden.service.refresh import RefreshCredentialManager
from tokenwarden.service.secondary import SecondaryCredentialManager
from tokenwarden.service.tokens import TokenIssuer
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.models import CredentialKind, OAuthProvider, UserRole, UserStatus

PASSWORD = "Correct-Horse-9"


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def auth(store, key_store, clock):
    return AuthService(
        store,
        tokens=TokenIssuer(key_store, clock=clock),
        refresh=RefreshCredentialManager(store, clock=clock),
        lockout=LockoutGuard(store, clock=clock),
        secondary=SecondaryCredentialManager(store, clock=clock),
        clock=clock,
    )


@pytest.fixture
def active_user(auth):
    user, code = auth.register("ada@example.com", PASSWORD, first_name="Ada")
    return auth.verify_email("ada@example.com", code.secret)


class TestPasswords:
    def test_hash_is_salted_argon2id(self, auth):
        first, algo = auth._hash_password(PASSWORD)
        second, _ = auth._hash_password(PASSWORD)
        assert algo == "argon2id"
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_password(self, auth, active_user):
        assert auth.verify_password(active_user.id, PASSWORD) is True
        assert auth.verify_password(active_user.id, "wrong") is False
        assert auth.verify_password(9999, PASSWORD) is False


class TestRegistration:
    def test_register_creates_pending_user_and_code(self, auth, store):
        user, code = auth.register("New@Example.com", PASSWORD)
        assert user.email == "new@example.com"
        assert user.status == UserStatus.PENDING_VERIFICATION
        assert user.is_verified is False
        assert code.kind == CredentialKind.EMAIL_VERIFICATION
        assert store.get_password_record(user.id)[1] == "argon2id"

    def test_duplicate_email_conflicts(self, auth):
        auth.register("dup@example.com", PASSWORD)
        with pytest.raises(ConflictError):
            auth.register("DUP@example.com", PASSWORD)

    def test_signup_can_be_disabled(self, auth):
        auth.allow_signup = False
        with pytest.raises(ForbiddenError):
            auth.register("closed@example.com", PASSWORD)

    def test_verify_email_activates(self, active_user):
        assert active_user.status == UserStatus.ACTIVE
        assert active_user.is_verified is True

    def test_verify_twice(self, auth, active_user):
        with pytest.raises(ValidationError):
            auth.verify_email(active_user.email, "000000")

    def test_resend_only_for_pending_accounts(self, auth, active_user):
        assert auth.resend_verification(active_user.email) is None
        assert auth.resend_verification("ghost@example.com") is None
        auth.register("pending@example.com", PASSWORD)
        user, code = auth.resend_verification("pending@example.com")
        assert user.email == "pending@example.com"
        assert len(code.secret) == 6


class TestLogin:
    def test_login_issues_pair(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        claims = auth.tokens.verify_access_token(pair.access_token)
        assert claims.user_id == active_user.id
        assert claims.subject == "ada@example.com"
        assert pair.expires_in == 30 * 60
        assert pair.token_type == "Bearer"
        assert pair.user.last_login_at is not None

    def test_unknown_email_is_generic(self, auth):
        with pytest.raises(AuthenticationError) as exc_info:
            auth.login("ghost@example.com", PASSWORD)
        assert exc_info.value.message == "invalid credentials"

    def test_wrong_password_is_generic_and_counted(self, auth, active_user, store):
        with pytest.raises(AuthenticationError) as exc_info:
            auth.login("ada@example.com", "nope")
        assert exc_info.value.message == "invalid credentials"
        assert store.get_user(active_user.id).failed_login_attempts == 1

    def test_pending_account_cannot_login(self, auth):
        auth.register("pending@example.com", PASSWORD)
        with pytest.raises(ForbiddenError) as exc_info:
            auth.login("pending@example.com", PASSWORD)
        assert "not verified" in exc_info.value.message

    def test_suspended_account_cannot_login(self, auth, active_user, store):
        store.update_user_status(active_user.id, UserStatus.SUSPENDED)
        with pytest.raises(ForbiddenError):
            auth.login("ada@example.com", PASSWORD)

    def test_lock_blocks_correct_password(self, auth, active_user, clock):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth.login("ada@example.com", "nope")
        with pytest.raises(AccountLockedError) as exc_info:
            auth.login("ada@example.com", PASSWORD)
        assert exc_info.value.status_code == 423

        clock.advance(timedelta(minutes=15))
        assert auth.login("ada@example.com", PASSWORD).access_token

    def test_success_resets_failures(self, auth, active_user, store):
        with pytest.raises(AuthenticationError):
            auth.login("ada@example.com", "nope")
        auth.login("ada@example.com", PASSWORD)
        assert store.get_user(active_user.id).failed_login_attempts == 0

    def test_login_revokes_previous_refresh_tokens(self, auth, active_user):
        first = auth.login("ada@example.com", PASSWORD)
        auth.login("ada@example.com", PASSWORD)
        with pytest.raises(RefreshTokenRevokedError):
            auth.refresh(first.refresh_token)

    def test_deleted_account_looks_unknown(self, auth, active_user):
        auth.delete_account(active_user.id)
        with pytest.raises(AuthenticationError) as exc_info:
            auth.login("ada@example.com", PASSWORD)
        assert exc_info.value.message == "invalid credentials"


class TestExternalLogin:
    def test_unknown_email_creates_active_account(self, auth, store, clock):
        pair = auth.login_external(OAuthProvider.GOOGLE, "New@Gmail.com", "Grace", "Hopper")

        user = store.get_user_by_email("new@gmail.com")
        assert pair.user.id == user.id
        assert user.oauth_provider == OAuthProvider.GOOGLE
        assert user.status == UserStatus.ACTIVE
        assert user.is_verified is True
        assert (user.first_name, user.last_name) == ("Grace", "Hopper")
        assert user.last_login_at == clock()
        assert store.get_password_record(user.id) is None
        assert auth.tokens.verify_access_token(pair.access_token).user_id == user.id
        assert store.get_refresh_token(pair.refresh_token).user_id == user.id

    def test_missing_names_fall_back_to_email(self, auth):
        pair = auth.login_external(OAuthProvider.GOOGLE, "solo@gmail.com")
        assert pair.user.first_name == "solo"
        assert pair.user.last_name == ""

    def test_pending_local_account_is_linked_and_activated(self, auth, store):
        user, _ = auth.register("ada@example.com", PASSWORD, first_name="Ada")

        pair = auth.login_external(OAuthProvider.GOOGLE, "ada@example.com", "Ada", "Lovelace")

        linked = store.get_user(user.id)
        assert pair.user.id == user.id
        assert linked.oauth_provider == OAuthProvider.GOOGLE
        assert linked.status == UserStatus.ACTIVE
        assert linked.is_verified is True
        assert linked.last_name == "Lovelace"
        # the local password no longer signs in
        assert store.get_password_record(user.id) is None
        with pytest.raises(AuthenticationError):
            auth.login("ada@example.com", PASSWORD)

    def test_returning_user_gets_profile_and_last_login_updated(self, auth, store, clock):
        first = auth.login_external(OAuthProvider.GOOGLE, "repeat@gmail.com", "Old", "Name")
        clock.advance(timedelta(hours=2))

        second = auth.login_external(OAuthProvider.GOOGLE, "repeat@gmail.com", "New", "Name")

        user = store.get_user(first.user.id)
        assert second.user.id == first.user.id
        assert user.first_name == "New"
        assert user.last_login_at == clock()
        # one live refresh chain per account, as with password login
        assert store.get_refresh_token(first.refresh_token).revoked is True
        assert store.get_refresh_token(second.refresh_token).revoked is False

    def test_suspended_account_is_refused(self, auth, active_user, store):
        store.update_user_status(active_user.id, UserStatus.SUSPENDED)
        with pytest.raises(ForbiddenError):
            auth.login_external(OAuthProvider.GOOGLE, "ada@example.com")
        assert store.get_user(active_user.id).oauth_provider == OAuthProvider.LOCAL

    @pytest.mark.parametrize("provider,email", [(OAuthProvider.LOCAL, "x@example.com"), (OAuthProvider.GOOGLE, "  ")])
    def test_invalid_input_rejected(self, auth, provider, email):
        with pytest.raises(ValidationError):
            auth.login_external(provider, email)


class TestRefreshAndLogout:
    def test_refresh_rotates(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        rotated = auth.refresh(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        assert auth.tokens.verify_access_token(rotated.access_token).user_id == active_user.id
        with pytest.raises(RefreshTokenRevokedError):
            auth.refresh(pair.refresh_token)

    def test_refresh_refused_for_suspended_user(self, auth, active_user, store):
        pair = auth.login("ada@example.com", PASSWORD)
        store.update_user_status(active_user.id, UserStatus.SUSPENDED)
        with pytest.raises(AuthenticationError):
            auth.refresh(pair.refresh_token)
        # the child minted during the refused refresh does not survive
        assert all(t.revoked for t in store.list_refresh_tokens(active_user.id))

    def test_logout_revokes_refresh_tokens(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        assert auth.logout(active_user.id) == 1
        with pytest.raises(RefreshTokenRevokedError):
            auth.refresh(pair.refresh_token)

    def test_replayed_refresh_is_logged(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        auth.refresh(pair.refresh_token)
        with patch("tokenwarden.service.refresh.logger") as mock_logger:
            with pytest.raises(RefreshTokenRevokedError):
                auth.refresh(pair.refresh_token)
        event, kwargs = mock_logger.warning.call_args.args[0], mock_logger.warning.call_args.kwargs
        assert event == "refresh_token_replay_detected"
        assert kwargs["user_id"] == active_user.id
        assert kwargs["revoke_all"] is False

    def test_replay_revokes_all_when_configured(self, store, key_store, clock, active_user):
        auth = AuthService(
            store,
            tokens=TokenIssuer(key_store, clock=clock),
            refresh=RefreshCredentialManager(store, revoke_all_on_replay=True, clock=clock),
            lockout=LockoutGuard(store, clock=clock),
            secondary=SecondaryCredentialManager(store, clock=clock),
            clock=clock,
        )
        first = auth.login("ada@example.com", PASSWORD)
        child = auth.refresh(first.refresh_token)

        with pytest.raises(RefreshTokenRevokedError):
            auth.refresh(first.refresh_token)

        assert store.get_refresh_token(child.refresh_token).revoked is True
        with pytest.raises(RefreshTokenRevokedError):
            auth.refresh(child.refresh_token)

    def test_logged_out_token_is_not_treated_as_replay(self, store, key_store, clock, active_user):
        auth = AuthService(
            store,
            tokens=TokenIssuer(key_store, clock=clock),
            refresh=RefreshCredentialManager(store, revoke_all_on_replay=True, clock=clock),
            lockout=LockoutGuard(store, clock=clock),
            secondary=SecondaryCredentialManager(store, clock=clock),
            clock=clock,
        )
        old = auth.login("ada@example.com", PASSWORD)
        auth.logout(active_user.id)
        fresh = auth.login("ada@example.com", PASSWORD)

        with patch("tokenwarden.service.refresh.logger") as mock_logger:
            with pytest.raises(RefreshTokenRevokedError):
                auth.refresh(old.refresh_token)
        mock_logger.warning.assert_not_called()
        assert store.get_refresh_token(fresh.refresh_token).revoked is False


class TestPasswordReset:
    def test_unknown_email_returns_none(self, auth):
        assert auth.request_password_reset("ghost@example.com") is None

    def test_reset_flow(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        user, token = auth.request_password_reset("ada@example.com")
        assert user.id == active_user.id
        assert auth.validate_reset_token(token.secret) is True

        auth.reset_password(token.secret, "Brand-New-Pass1")

        assert auth.validate_reset_token(token.secret) is False
        with pytest.raises(RefreshTokenRevokedError):
            auth.refresh(pair.refresh_token)
        with pytest.raises(AuthenticationError):
            auth.login("ada@example.com", PASSWORD)
        assert auth.login("ada@example.com", "Brand-New-Pass1").access_token
        with pytest.raises(CredentialUsedError):
            auth.reset_password(token.secret, "Another-Pass-22")


class TestAccount:
    def test_change_password_checks_current(self, auth, active_user):
        with pytest.raises(AuthenticationError):
            auth.change_password(active_user.id, "wrong", "Other-Pass-123")
        with pytest.raises(ValidationError):
            auth.change_password(active_user.id, PASSWORD, PASSWORD)
        auth.change_password(active_user.id, PASSWORD, "Other-Pass-123")
        assert auth.verify_password(active_user.id, "Other-Pass-123") is True

    def test_delete_account_is_soft(self, auth, active_user, store):
        auth.login("ada@example.com", PASSWORD)
        auth.delete_account(active_user.id)
        assert store.get_user(active_user.id).status == UserStatus.DELETED
        assert all(t.revoked for t in store.list_refresh_tokens(active_user.id))
        with pytest.raises(NotFoundError):
            auth.delete_account(9999)

    def test_admin_unlock(self, auth, active_user):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth.login("ada@example.com", "nope")
        assert auth.lock_status(active_user.id).locked is True
        auth.admin_unlock(active_user.id)
        assert auth.lock_status(active_user.id).locked is False
        assert auth.login("ada@example.com", PASSWORD).access_token


class TestAuthenticate:
    def test_bearer_round_trip(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        ctx = auth.authenticate(f"Bearer {pair.access_token}")
        assert ctx.user_id == active_user.id
        assert ctx.role == "USER"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_missing_or_foreign_scheme(self, auth, header):
        with pytest.raises(AuthenticationError):
            auth.authenticate(header)

    def test_admin_role_required(self, auth, active_user, store):
        pair = auth.login("ada@example.com", PASSWORD)
        with pytest.raises(ForbiddenError):
            auth.authenticate(f"Bearer {pair.access_token}", required_role=UserRole.ADMIN)

        store.update_user_role(active_user.id, UserRole.ADMIN)
        ctx = auth.authenticate(f"Bearer {pair.access_token}", required_role=UserRole.ADMIN)
        assert ctx.role == "ADMIN"

    def test_deleted_user_token_rejected(self, auth, active_user):
        pair = auth.login("ada@example.com", PASSWORD)
        auth.delete_account(active_user.id)
        with pytest.raises(AuthenticationError):
            auth.authenticate(f"Bearer {pair.access_token}")
