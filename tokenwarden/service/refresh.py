"""Opaque refresh tokens: issue, redeem, rotate, revoke.

Per-token states are Active, Revoked and Expired. Expired is derived from
``expires_at`` and never stored. Rotation revokes through the store's
conditional update, so of two concurrent rotations of the same token only
one sees the row flip and the other gets ``RefreshTokenRevokedError``.
Presenting a token that was revoked by rotation is treated as replay.
Storage exceptions are not caught here.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenRevokedError,
)
from tokenwarden.storage.models import RefreshToken

logger = get_logger(__name__)

TOKEN_BYTES = 48


class RefreshStore(Protocol):
    def create_refresh_token(self, user_id: int, token: str, expires_at: datetime) -> RefreshToken:
        ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        ...

    def revoke_refresh_token_if_active(self, token: str, now: datetime) -> Optional[RefreshToken]:
        ...

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        ...


class RefreshCredentialManager:
    def __init__(
        self,
        store: RefreshStore,
        *,
        ttl_days: int = 7,
        revoke_all_on_replay: bool = False,
        cleanup_interval_minutes: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl_days = ttl_days
        self.revoke_all_on_replay = revoke_all_on_replay
        self.cleanup_interval_minutes = cleanup_interval_minutes
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_cleanup: Optional[datetime] = None

    def issue(self, user_id: int, ttl_days: Optional[int] = None) -> RefreshToken:
        days = self.ttl_days if ttl_days is None else ttl_days
        if days <= 0:
            raise ValueError("refresh token ttl must be positive")
        self.maybe_cleanup()
        token = secrets.token_urlsafe(TOKEN_BYTES)
        expires_at = self._clock() + timedelta(days=days)
        return self.store.create_refresh_token(user_id, token, expires_at)

    def cleanup_expired(self) -> int:
        """Delete refresh tokens whose expiry has passed.

        Expired rows can never be redeemed, rotated or replayed, so nothing
        downstream depends on keeping them.
        """
        now = self._clock()
        removed = self.store.delete_expired_refresh_tokens(now)
        self._last_cleanup = now
        if removed:
            logger.info("refresh_tokens_purged", count=removed)
        return removed

    def maybe_cleanup(self) -> int:
        """Run ``cleanup_expired`` when the interval has elapsed since the last run."""
        now = self._clock()
        interval = timedelta(minutes=self.cleanup_interval_minutes)
        if self._last_cleanup is None or now - self._last_cleanup >= interval:
            return self.cleanup_expired()
        return 0

    def redeem(self, token: str) -> int:
        """Return the owning user id of a usable token without consuming it."""
        record = self._checked(token, self._clock())
        return record.user_id

    def rotate(self, token: str) -> RefreshToken:
        now = self._clock()
        revoked = self.store.revoke_refresh_token_if_active(token, now) if token else None
        if revoked is None:
            try:
                self._checked(token, now)
            except RefreshTokenRevokedError:
                self._on_replay(token)
                raise
            # the conditional update saw the token unusable; revocation is one-way
            raise RefreshTokenRevokedError()
        child = self.issue(revoked.user_id)
        logger.info("refresh_token_rotated", user_id=revoked.user_id, parent_id=revoked.id, child_id=child.id)
        return child

    def revoke_all(self, user_id: int) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=count)
        return count

    def _checked(self, token: str, now: datetime) -> RefreshToken:
        record = self.store.get_refresh_token(token) if token else None
        if record is None:
            raise RefreshTokenNotFoundError()
        if record.revoked:
            raise RefreshTokenRevokedError()
        if record.is_expired(now):
            raise RefreshTokenExpiredError()
        return record

    def _on_replay(self, token: str) -> None:
        record = self.store.get_refresh_token(token)
        # tokens revoked by logout, login or password change are plain rejections
        if record is None or not record.rotated:
            return
        logger.warning(
            "refresh_token_replay_detected",
            user_id=record.user_id,
            refresh_token_id=record.id,
            revoke_all=self.revoke_all_on_replay,
        )
        if self.revoke_all_on_replay:
            self.revoke_all(record.user_id)
