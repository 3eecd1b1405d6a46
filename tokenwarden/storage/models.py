from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class OAuthProvider(str, Enum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


class CredentialKind(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass(frozen=True)
class LockoutState:
    """Brute-force counters carried on the user record."""

    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_login_attempt: Optional[datetime] = None


@dataclass
class User:
    id: int
    email: str
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    oauth_provider: OAuthProvider = OAuthProvider.LOCAL
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_login_attempt: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def lockout_state(self) -> LockoutState:
        return LockoutState(
            failed_login_attempts=self.failed_login_attempts,
            locked_until=self.locked_until,
            last_failed_login_attempt=self.last_failed_login_attempt,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def can_login(self, now: datetime) -> bool:
        return (
            self.status == UserStatus.ACTIVE
            and self.is_verified
            and not self.is_locked(now)
        )


@dataclass
class UserAuthCredential:
    user_id: int
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class RefreshToken:
    id: int
    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    rotated: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class SecondaryCredential:
    """Password reset token or email verification code."""

    id: int
    user_id: int
    kind: CredentialKind
    secret: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime, max_attempts: int) -> bool:
        return not self.used and now < self.expires_at and self.attempts < max_attempts
