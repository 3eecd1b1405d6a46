"""Single-use, expiring secondary credentials.

Password reset uses an opaque URL-safe token looked up by value. Email
verification uses a 6-digit code checked against the user's latest code, with
an attempt cap: each mismatch increments ``attempts`` and persists it even
though the call fails. Consuming a verification code also activates the
account, in the same storage transaction.
"""

from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    CredentialExpiredError,
    CredentialNotFoundError,
    CredentialUsedError,
    TooManyAttemptsError,
)
from tokenwarden.storage.models import CredentialKind, SecondaryCredential, User

logger = get_logger(__name__)

CODE_DIGITS = 6
RESET_TOKEN_BYTES = 32


def generate_numeric_code(digits: int = CODE_DIGITS) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


class SecondaryStore(Protocol):
    def create_secondary_credential(
        self, user_id: int, kind: CredentialKind, secret: str, expires_at: datetime
    ) -> SecondaryCredential:
        ...

    def get_secondary_by_secret(
        self, secret: str, kind: CredentialKind
    ) -> Optional[SecondaryCredential]:
        ...

    def get_latest_secondary_for_user(
        self, user_id: int, kind: CredentialKind
    ) -> Optional[SecondaryCredential]:
        ...

    def increment_secondary_attempts(self, credential_id: int) -> Optional[SecondaryCredential]:
        ...

    def mark_secondary_used(self, credential_id: int) -> bool:
        ...

    def consume_verification_code(self, credential_id: int, user_id: int) -> Optional[User]:
        ...


class SecondaryCredentialManager:
    def __init__(
        self,
        store: SecondaryStore,
        *,
        reset_ttl: timedelta = timedelta(hours=1),
        verification_ttl: timedelta = timedelta(minutes=15),
        max_attempts: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.reset_ttl = reset_ttl
        self.verification_ttl = verification_ttl
        self.max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def default_ttl(self, kind: CredentialKind) -> timedelta:
        if kind == CredentialKind.EMAIL_VERIFICATION:
            return self.verification_ttl
        return self.reset_ttl

    def issue(
        self,
        user_id: int,
        kind: CredentialKind,
        ttl: Optional[timedelta] = None,
    ) -> SecondaryCredential:
        kind = CredentialKind(kind)
        lifetime = ttl if ttl is not None else self.default_ttl(kind)
        if kind == CredentialKind.EMAIL_VERIFICATION:
            secret = generate_numeric_code()
        else:
            secret = secrets.token_urlsafe(RESET_TOKEN_BYTES)
        credential = self.store.create_secondary_credential(
            user_id, kind, secret, self._clock() + lifetime
        )
        logger.info(
            "secondary_credential_issued",
            user_id=user_id,
            kind=kind.value,
            expires_at=credential.expires_at.isoformat(),
        )
        return credential

    def validate(
        self, secret: str, kind: CredentialKind, *, user_id: Optional[int] = None
    ) -> bool:
        """Read-only check; never consumes or counts an attempt."""
        if not secret:
            return False
        record = self._lookup(secret, CredentialKind(kind), user_id)
        if record is None or not hmac.compare_digest(record.secret, secret):
            return False
        return record.is_valid(self._clock(), self._attempt_cap(record.kind))

    def consume(
        self, secret: str, kind: CredentialKind, *, user_id: Optional[int] = None
    ) -> SecondaryCredential:
        kind = CredentialKind(kind)
        if not secret:
            raise CredentialNotFoundError(self._message(kind))
        record = self._lookup(secret, kind, user_id)
        if record is None:
            raise CredentialNotFoundError(self._message(kind))
        now = self._clock()
        if record.used:
            raise CredentialUsedError(self._message(kind))
        if record.is_expired(now):
            raise CredentialExpiredError(self._message(kind))
        if record.attempts >= self._attempt_cap(kind):
            raise TooManyAttemptsError(self._message(kind))

        if not hmac.compare_digest(record.secret, secret):
            updated = self.store.increment_secondary_attempts(record.id)
            attempts = updated.attempts if updated else record.attempts + 1
            logger.info(
                "secondary_credential_mismatch",
                user_id=record.user_id,
                kind=kind.value,
                attempts=attempts,
            )
            if attempts >= self._attempt_cap(kind):
                raise TooManyAttemptsError(self._message(kind))
            raise CredentialNotFoundError(self._message(kind))

        if kind == CredentialKind.EMAIL_VERIFICATION:
            activated = self.store.consume_verification_code(record.id, record.user_id)
            if activated is None:
                raise CredentialUsedError(self._message(kind))
            logger.info("email_verified", user_id=record.user_id)
        elif not self.store.mark_secondary_used(record.id):
            raise CredentialUsedError(self._message(kind))

        record.used = True
        return record

    def _lookup(
        self, secret: str, kind: CredentialKind, user_id: Optional[int]
    ) -> Optional[SecondaryCredential]:
        if kind == CredentialKind.EMAIL_VERIFICATION:
            # codes are short; only the owner's latest code is ever compared
            if user_id is None:
                return None
            return self.store.get_latest_secondary_for_user(user_id, kind)
        record = self.store.get_secondary_by_secret(secret, kind)
        if record is not None and user_id is not None and record.user_id != user_id:
            return None
        return record

    def _attempt_cap(self, kind: CredentialKind) -> int:
        if kind == CredentialKind.EMAIL_VERIFICATION:
            return self.max_attempts
        # reset tokens are unguessable; attempts are not counted
        return 1 << 30

    @staticmethod
    def _message(kind: CredentialKind) -> str:
        if kind == CredentialKind.EMAIL_VERIFICATION:
            return "invalid or expired code"
        return "invalid or expired token"
