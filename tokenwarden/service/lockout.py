"""Per-account brute-force lockout.

The state machine is a set of pure ``LockoutState -> LockoutState``
transitions. ``LockoutGuard`` applies them through the store's
``update_lockout_state(user_id, transition)``, which runs the transition
under a row lock (postgres) or the store lock (memory), so concurrent
failures can never lose the transition into the locked state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import NotFoundError
from tokenwarden.storage.models import LockoutState, User

logger = get_logger(__name__)

Transition = Callable[[LockoutState], LockoutState]


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    lock_duration: timedelta = timedelta(minutes=15)


def can_attempt(state: LockoutState, now: datetime) -> bool:
    return state.locked_until is None or now >= state.locked_until


def record_failure(
    state: LockoutState, now: datetime, policy: LockoutPolicy
) -> LockoutState:
    attempts = state.failed_login_attempts + 1
    locked_until = state.locked_until
    if attempts >= policy.threshold:
        locked_until = now + policy.lock_duration
    return replace(
        state,
        failed_login_attempts=attempts,
        locked_until=locked_until,
        last_failed_login_attempt=now,
    )


def record_success(state: LockoutState) -> LockoutState:
    return LockoutState()


def unlock(state: LockoutState) -> LockoutState:
    return LockoutState()


class LockoutStore(Protocol):
    def update_lockout_state(self, user_id: int, transition: Transition) -> Optional[User]:
        ...

    def get_user(self, user_id: int) -> Optional[User]:
        ...


@dataclass(frozen=True)
class LockStatus:
    user_id: int
    locked: bool
    failed_login_attempts: int
    locked_until: Optional[datetime]
    last_failed_login_attempt: Optional[datetime]


class LockoutGuard:
    """Consulted by the login flow; never exposed as an endpoint on its own.

    Storage errors propagate to the caller, so a broken database denies the
    login rather than skipping the lock check.
    """

    def __init__(
        self,
        store: LockoutStore,
        policy: Optional[LockoutPolicy] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy or LockoutPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def can_attempt(self, user: User) -> bool:
        return can_attempt(user.lockout_state, self._clock())

    def record_failure(self, user: User) -> User:
        now = self._clock()
        updated = self._apply(
            user.id, lambda state: record_failure(state, now, self.policy)
        )
        if updated.failed_login_attempts >= self.policy.threshold:
            logger.warning(
                "account_locked",
                user_id=updated.id,
                failed_login_attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
            )
        else:
            logger.info(
                "login_failure_recorded",
                user_id=updated.id,
                failed_login_attempts=updated.failed_login_attempts,
            )
        return updated

    def record_success(self, user: User) -> User:
        if user.lockout_state == LockoutState():
            return user
        return self._apply(user.id, record_success)

    def unlock(self, user_id: int) -> User:
        updated = self._apply(user_id, unlock)
        logger.info("account_unlocked", user_id=user_id)
        return updated

    def status(self, user_id: int) -> LockStatus:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return LockStatus(
            user_id=user.id,
            locked=not can_attempt(user.lockout_state, self._clock()),
            failed_login_attempts=user.failed_login_attempts,
            locked_until=user.locked_until,
            last_failed_login_attempt=user.last_failed_login_attempt,
        )

    def _apply(self, user_id: int, transition: Transition) -> User:
        updated = self.store.update_lockout_state(user_id, transition)
        if updated is None:
            raise NotFoundError("user not found")
        return updated
