"""Tests for the account lockout state machine and guard."""

import threading
from datetime import timedelta

import pytest

from tokenwarden.service.errors import NotFoundError
from tokenwarden.service.lockout import (
    LockoutGuard,
    LockoutPolicy,
    can_attempt,
    record_failure,
    record_success,
    unlock,
)
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.models import LockoutState


POLICY = LockoutPolicy(threshold=5, lock_duration=timedelta(minutes=15))


class TestTransitions:
    def test_fresh_state_may_attempt(self, clock):
        assert can_attempt(LockoutState(), clock()) is True

    def test_failures_below_threshold_do_not_lock(self, clock):
        state = LockoutState()
        for _ in range(4):
            state = record_failure(state, clock(), POLICY)
        assert state.failed_login_attempts == 4
        assert state.locked_until is None
        assert state.last_failed_login_attempt == clock()
        assert can_attempt(state, clock()) is True

    def test_threshold_failure_locks_for_duration(self, clock):
        state = LockoutState()
        for _ in range(5):
            state = record_failure(state, clock(), POLICY)
        assert state.locked_until == clock() + timedelta(minutes=15)
        assert can_attempt(state, clock()) is False
        assert can_attempt(state, clock() + timedelta(minutes=15)) is True

    def test_success_and_unlock_clear_everything(self, clock):
        locked = LockoutState(
            failed_login_attempts=7,
            locked_until=clock() + timedelta(minutes=5),
            last_failed_login_attempt=clock(),
        )
        assert record_success(locked) == LockoutState()
        assert unlock(locked) == LockoutState()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def guard(store, clock):
    return LockoutGuard(store, POLICY, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("locked@example.com")


class TestLockoutGuard:
    def test_five_failures_lock_the_account(self, guard, user, store):
        for _ in range(5):
            user = guard.record_failure(user)
        assert guard.can_attempt(user) is False
        assert store.get_user(user.id).failed_login_attempts == 5

    def test_lock_expires_without_intervention(self, guard, user, clock):
        for _ in range(5):
            user = guard.record_failure(user)
        clock.advance(timedelta(minutes=15))
        assert guard.can_attempt(user) is True

    def test_success_clears_failures(self, guard, user, store):
        for _ in range(3):
            user = guard.record_failure(user)
        cleared = guard.record_success(user)
        assert cleared.failed_login_attempts == 0
        assert store.get_user(user.id).lockout_state == LockoutState()

    def test_admin_unlock_and_status(self, guard, user):
        for _ in range(5):
            user = guard.record_failure(user)
        status = guard.status(user.id)
        assert status.locked is True
        assert status.failed_login_attempts == 5

        guard.unlock(user.id)
        status = guard.status(user.id)
        assert status.locked is False
        assert status.failed_login_attempts == 0
        assert status.locked_until is None

    def test_unknown_user(self, guard):
        with pytest.raises(NotFoundError):
            guard.status(999)
        with pytest.raises(NotFoundError):
            guard.unlock(999)

    def test_concurrent_failures_are_all_counted(self, guard, user, store):
        threads = [threading.Thread(target=guard.record_failure, args=(user,)) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = store.get_user(user.id)
        assert stored.failed_login_attempts == 10
        assert stored.locked_until is not None
