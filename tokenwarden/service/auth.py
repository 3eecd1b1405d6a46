from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SecondaryCredentialError,
    ValidationError,
)
from tokenwarden.service.lockout import LockoutGuard, LockStatus
from tokenwarden.service.refresh import RefreshCredentialManager
from tokenwarden.service.secondary import SecondaryCredentialManager
from tokenwarden.service.tokens import TokenIssuer
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    CredentialKind,
    OAuthProvider,
    SecondaryCredential,
    User,
    UserRole,
    UserStatus,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
        is_verified: bool = False,
        oauth_provider: OAuthProvider = OAuthProvider.LOCAL,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_status(
        self, user_id: int, status: UserStatus, *, is_verified: Optional[bool] = None
    ) -> Optional[User]: ...

    def set_last_login(self, user_id: int, when: datetime) -> None: ...

    def link_external_identity(
        self,
        user_id: int,
        provider: OAuthProvider,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        when: datetime,
        drop_password: bool = False,
    ) -> Optional[User]: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: int
    email: str
    role: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    user: User
    token_type: str = "Bearer"


class AuthService:
    """Account use cases built on the token, refresh, lockout and secondary managers.

    Rate limiting happens before these methods are called (in the routing
    layer); everything after that, including lockout, lives here.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        tokens: TokenIssuer,
        refresh: RefreshCredentialManager,
        lockout: LockoutGuard,
        secondary: SecondaryCredentialManager,
        allow_signup: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.refresh_credentials = refresh
        self.lockout = lockout
        self.secondary = secondary
        self.allow_signup = allow_signup
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against when the email is unknown so that path costs one hash too
        self._dummy_hash = self._pwd_hasher.hash("tokenwarden-unknown-user")
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock:
            return self._clock()
        return datetime.now(timezone.utc)

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_password_check(self, password: str) -> None:
        with contextlib.suppress(InvalidHash, VerifyMismatchError):
            self._pwd_hasher.verify(self._dummy_hash, password)

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- registration and login ---------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> tuple[User, SecondaryCredential]:
        if not self.allow_signup:
            raise ForbiddenError("signup is disabled")
        try:
            user = self.store.create_user(
                email,
                first_name=first_name,
                last_name=last_name,
                status=UserStatus.PENDING_VERIFICATION,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        code = self.secondary.issue(user.id, CredentialKind.EMAIL_VERIFICATION)
        self.logger.info("user_registered", user_id=user.id)
        return user, code

    def login(self, email: str, password: str) -> TokenPair:
        user = self.store.get_user_by_email(email)
        if not user or user.status == UserStatus.DELETED:
            self._burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError(INVALID_CREDENTIALS)

        # a locked account never reaches the password comparison
        if not self.lockout.can_attempt(user):
            self.logger.info("login_blocked_locked", user_id=user.id)
            raise AccountLockedError()

        if not self.verify_password(user.id, password):
            self.lockout.record_failure(user)
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if not user.can_login(self._now()):
            self.logger.info(
                "login_refused_inactive", user_id=user.id, status=user.status.value
            )
            if user.status == UserStatus.PENDING_VERIFICATION or not user.is_verified:
                raise ForbiddenError("email address not verified")
            raise ForbiddenError("account is not active")

        user = self.lockout.record_success(user)
        now = self._now()
        self.store.set_last_login(user.id, now)
        user.last_login_at = now
        # one live refresh chain per account
        self.refresh_credentials.revoke_all(user.id)
        pair = self._issue_pair(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return pair

    def login_external(
        self,
        provider: OAuthProvider,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> TokenPair:
        """Sign in a user whose email an external provider has already verified.

        Unknown emails get a new ACTIVE, verified account owned by ``provider``.
        An existing LOCAL account is converted to ``provider`` and its password
        removed; a pending account is activated. Names reported by the provider
        replace the stored ones. The redirect handshake with the provider
        happens before this call and is not handled here.
        """
        provider = OAuthProvider(provider)
        if provider == OAuthProvider.LOCAL:
            raise ValidationError("external login requires an external provider")
        email = (email or "").strip()
        if not email:
            raise ValidationError("email is required", detail={"field": "email"})
        first = (first_name or "").strip() or email.split("@")[0]
        last = (last_name or "").strip()
        now = self._now()

        user = self.store.get_user_by_email(email)
        if user and user.status in (UserStatus.SUSPENDED, UserStatus.DELETED):
            self.logger.info(
                "external_login_refused", user_id=user.id, status=user.status.value
            )
            raise ForbiddenError("account is not active")

        if user is None:
            try:
                user = self.store.create_user(
                    email,
                    first_name=first,
                    last_name=last,
                    status=UserStatus.ACTIVE,
                    is_verified=True,
                    oauth_provider=provider,
                )
            except ConstraintViolation as exc:
                raise ConflictError("email already registered", detail=exc.detail) from exc
            self.store.set_last_login(user.id, now)
            user.last_login_at = now
            self.logger.info("external_user_created", user_id=user.id, provider=provider.value)
        else:
            converting = user.oauth_provider == OAuthProvider.LOCAL
            linked = self.store.link_external_identity(
                user.id,
                provider,
                first_name=first,
                last_name=last,
                when=now,
                drop_password=converting,
            )
            if linked is None:
                raise NotFoundError("user not found")
            if converting:
                self.logger.info(
                    "local_account_linked", user_id=user.id, provider=provider.value
                )
            user = linked

        self.refresh_credentials.revoke_all(user.id)
        pair = self._issue_pair(user)
        self.logger.info("external_login_succeeded", user_id=user.id, provider=provider.value)
        return pair

    def refresh(self, refresh_token: str) -> TokenPair:
        # rotation runs first so a replayed parent reaches the replay handling
        child = self.refresh_credentials.rotate(refresh_token)
        user = self.store.get_user(child.user_id)
        if not user or not user.can_login(self._now()):
            self.refresh_credentials.revoke_all(child.user_id)
            self.logger.info("refresh_refused_inactive", user_id=child.user_id)
            raise AuthenticationError("invalid token")
        return TokenPair(
            access_token=self.tokens.issue_access_token(user.id, user.email, user.role.value),
            refresh_token=child.token,
            expires_in=int(self.tokens.access_ttl.total_seconds()),
            user=user,
        )

    def logout(self, user_id: int) -> int:
        count = self.refresh_credentials.revoke_all(user_id)
        self.logger.info("logout", user_id=user_id)
        return count

    def _issue_pair(self, user: User) -> TokenPair:
        access = self.tokens.issue_access_token(user.id, user.email, user.role.value)
        refresh = self.refresh_credentials.issue(user.id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh.token,
            expires_in=int(self.tokens.access_ttl.total_seconds()),
            user=user,
        )

    # -- password reset ------------------------------------------------------

    def request_password_reset(self, email: str) -> Optional[tuple[User, SecondaryCredential]]:
        """Issue a reset token if the account exists; None otherwise.

        The caller responds identically either way.
        """
        user = self.store.get_user_by_email(email)
        if not user or user.status == UserStatus.DELETED:
            self.logger.info("password_reset_unknown_email")
            return None
        credential = self.secondary.issue(user.id, CredentialKind.PASSWORD_RESET)
        self.logger.info("password_reset_requested", user_id=user.id)
        return user, credential

    def validate_reset_token(self, token: str) -> bool:
        return self.secondary.validate(token, CredentialKind.PASSWORD_RESET)

    def reset_password(self, token: str, new_password: str) -> User:
        credential = self.secondary.consume(token, CredentialKind.PASSWORD_RESET)
        user = self.store.get_user(credential.user_id)
        if not user or user.status == UserStatus.DELETED:
            raise SecondaryCredentialError("invalid or expired token")
        self.save_password(user.id, new_password)
        self.refresh_credentials.revoke_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    # -- email verification --------------------------------------------------

    def verify_email(self, email: str, code: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user or user.status == UserStatus.DELETED:
            raise SecondaryCredentialError("invalid or expired code")
        if user.is_verified:
            raise ValidationError("email already verified")
        self.secondary.consume(code, CredentialKind.EMAIL_VERIFICATION, user_id=user.id)
        verified = self.store.get_user(user.id)
        return verified or user

    def resend_verification(self, email: str) -> Optional[tuple[User, SecondaryCredential]]:
        """Issue a fresh code for a pending account; None when nothing to send."""
        user = self.store.get_user_by_email(email)
        if not user or user.is_verified or user.status != UserStatus.PENDING_VERIFICATION:
            return None
        code = self.secondary.issue(user.id, CredentialKind.EMAIL_VERIFICATION)
        self.logger.info("verification_code_reissued", user_id=user.id)
        return user, code

    # -- account -------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        user = self.get_user(user_id)
        if not self.verify_password(user.id, current_password):
            self.logger.info("password_change_rejected", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        self.save_password(user.id, new_password)
        self.refresh_credentials.revoke_all(user.id)
        self.logger.info("password_changed", user_id=user.id)

    def delete_account(self, user_id: int) -> None:
        user = self.store.update_user_status(user_id, UserStatus.DELETED)
        if not user:
            raise NotFoundError("user not found")
        self.refresh_credentials.revoke_all(user_id)
        self.logger.info("account_deleted", user_id=user_id)

    def admin_unlock(self, user_id: int) -> User:
        return self.lockout.unlock(user_id)

    def lock_status(self, user_id: int) -> LockStatus:
        return self.lockout.status(user_id)

    # -- bearer authentication ----------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[UserRole] = None,
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.verify_access_token(token)
        user = self.store.get_user(claims.user_id)
        if not user or user.status != UserStatus.ACTIVE:
            raise AuthenticationError("invalid token")
        if required_role is not None and user.role != required_role:
            raise ForbiddenError("insufficient role")
        return AuthContext(user_id=user.id, email=user.email, role=user.role.value)
