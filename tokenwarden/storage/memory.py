from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import normalize_email
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    CredentialKind,
    LockoutState,
    OAuthProvider,
    RefreshToken,
    SecondaryCredential,
    User,
    UserAuthCredential,
    UserRole,
    UserStatus,
)


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every read returns a copy so callers cannot mutate stored rows outside
    the lock; every conditional write checks and flips under ``_data_lock``.
    """

    backend = "memory"

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, UserAuthCredential] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.secondary_credentials: Dict[int, SecondaryCredential] = {}
        self._user_seq: int = 1
        self._refresh_seq: int = 1
        self._secondary_seq: int = 1
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- users ---------------------------------------------------------------

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
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._clock()
            user = User(
                id=self._user_seq,
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role=UserRole(role),
                status=UserStatus(status),
                oauth_provider=OAuthProvider(oauth_provider),
                is_verified=is_verified,
                created_at=now,
                updated_at=now,
            )
            self._user_seq += 1
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user_status(
        self, user_id: int, status: UserStatus, *, is_verified: Optional[bool] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            if is_verified is not None:
                user.is_verified = is_verified
            user.updated_at = self._clock()
            return replace(user)

    def update_user_role(self, user_id: int, role: UserRole) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            user.updated_at = self._clock()
            return replace(user)

    def set_last_login(self, user_id: int, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when
                user.updated_at = when

    def link_external_identity(
        self,
        user_id: int,
        provider: OAuthProvider,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        when: datetime,
        drop_password: bool = False,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.oauth_provider = OAuthProvider(provider)
            user.first_name = first_name
            user.last_name = last_name
            user.status = UserStatus.ACTIVE
            user.is_verified = True
            user.last_login_at = when
            user.updated_at = when
            if drop_password:
                self.credentials.pop(user_id, None)
            return replace(user)

    def update_lockout_state(
        self, user_id: int, transition: Callable[[LockoutState], LockoutState]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_state = transition(user.lockout_state)
            user.failed_login_attempts = new_state.failed_login_attempts
            user.locked_until = new_state.locked_until
            user.last_failed_login_attempt = new_state.last_failed_login_attempt
            user.updated_at = self._clock()
            return replace(user)

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            now = self._clock()
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else now,
                last_updated_at=now,
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            if not record or not record.password_hash:
                return None
            return record.password_hash, record.password_algo or "argon2id"

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                id=self._refresh_seq,
                token=token,
                user_id=user_id,
                expires_at=expires_at,
                created_at=self._clock(),
            )
            self._refresh_seq += 1
            self.refresh_tokens[token] = record
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def revoke_refresh_token_if_active(
        self, token: str, now: datetime
    ) -> Optional[RefreshToken]:
        """Mark a usable token revoked by rotation; None if it was not usable."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or not record.is_usable(now):
                return None
            record.revoked = True
            record.rotated = True
            return replace(record)

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    count += 1
            return count

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(record)
                for record in self.refresh_tokens.values()
                if record.user_id == user_id
            ]

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [t for t, r in self.refresh_tokens.items() if r.is_expired(now)]
            for token in expired:
                del self.refresh_tokens[token]
            return len(expired)

    # -- secondary credentials ----------------------------------------------

    def create_secondary_credential(
        self,
        user_id: int,
        kind: CredentialKind,
        secret: str,
        expires_at: datetime,
    ) -> SecondaryCredential:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            record = SecondaryCredential(
                id=self._secondary_seq,
                user_id=user_id,
                kind=CredentialKind(kind),
                secret=secret,
                expires_at=expires_at,
                created_at=self._clock(),
            )
            self._secondary_seq += 1
            self.secondary_credentials[record.id] = record
            return replace(record)

    def get_secondary_by_secret(
        self, secret: str, kind: CredentialKind
    ) -> Optional[SecondaryCredential]:
        with self._data_lock:
            record = next(
                (
                    r
                    for r in self.secondary_credentials.values()
                    if r.kind == kind and r.secret == secret
                ),
                None,
            )
            return replace(record) if record else None

    def get_latest_secondary_for_user(
        self, user_id: int, kind: CredentialKind
    ) -> Optional[SecondaryCredential]:
        with self._data_lock:
            candidates = [
                r
                for r in self.secondary_credentials.values()
                if r.user_id == user_id and r.kind == kind
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda r: (r.created_at, r.id))
            return replace(latest)

    def increment_secondary_attempts(self, credential_id: int) -> Optional[SecondaryCredential]:
        with self._data_lock:
            record = self.secondary_credentials.get(credential_id)
            if not record:
                return None
            record.attempts += 1
            return replace(record)

    def mark_secondary_used(self, credential_id: int) -> bool:
        with self._data_lock:
            record = self.secondary_credentials.get(credential_id)
            if not record or record.used:
                return False
            record.used = True
            return True

    def consume_verification_code(self, credential_id: int, user_id: int) -> Optional[User]:
        """Mark the code used and activate its owner in one step."""
        with self._data_lock:
            record = self.secondary_credentials.get(credential_id)
            user = self.users.get(user_id)
            if not record or record.used or record.user_id != user_id or not user:
                return None
            record.used = True
            user.status = UserStatus.ACTIVE
            user.is_verified = True
            user.updated_at = self._clock()
            return replace(user)
