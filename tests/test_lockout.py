"""
tests/test_lockout.py -- Unit tests for LockoutController over a real CredentialStore.

Covers:
  - the threshold-th consecutive failure locks the account for the configured duration
  - seconds_remaining() counts down and reaches 0 when the lock lapses
  - after a lapsed lock the next failure restarts the count at 1
  - reset() / unlock() clear both the counter and the lock
  - failures recorded from parallel threads are never lost
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from auth.lockout import LockoutController
from auth.models import User
from auth.store import CredentialStore, create_db_engine
from helpers import FakeClock, memory_db_url


@pytest.fixture
def store_and_user():
    engine = create_db_engine(memory_db_url("lockout"))
    store = CredentialStore(engine)
    clock = FakeClock()
    uid = store.create_user(User(email="lock@example.com", name="Lock Test", password_hash="x"), clock())
    yield store, uid, clock
    engine.dispose()


class TestLockout:
    def test_fifth_failure_locks(self, store_and_user) -> None:
        store, uid, clock = store_and_user
        lockout = LockoutController(store, threshold=5, lockout_minutes=15, clock=clock)
        states = [lockout.register_failure(uid) for _ in range(5)]
        assert [s.failed_attempts for s in states] == [1, 2, 3, 4, 5]
        assert [s.locked for s in states] == [False, False, False, False, True]
        assert states[-1].locked_until == clock.now + timedelta(minutes=15)

    def test_seconds_remaining_counts_down(self, store_and_user) -> None:
        store, uid, clock = store_and_user
        lockout = LockoutController(store, threshold=3, lockout_minutes=15, clock=clock)
        for _ in range(3):
            lockout.register_failure(uid)
        assert lockout.seconds_remaining(store.get_by_id(uid)) == 900
        clock.advance(minutes=10)
        assert lockout.seconds_remaining(store.get_by_id(uid)) == 300
        clock.advance(minutes=5)
        assert lockout.seconds_remaining(store.get_by_id(uid)) == 0, "Lock must lapse exactly at locked_until"

    def test_failure_after_lapsed_lock_restarts_count(self, store_and_user) -> None:
        store, uid, clock = store_and_user
        lockout = LockoutController(store, threshold=3, lockout_minutes=15, clock=clock)
        for _ in range(3):
            lockout.register_failure(uid)
        clock.advance(minutes=16)
        state = lockout.register_failure(uid)
        assert state.failed_attempts == 1
        assert not state.locked
        assert store.get_by_id(uid).locked_until is None

    def test_reset_clears_counter_and_lock(self, store_and_user) -> None:
        store, uid, clock = store_and_user
        lockout = LockoutController(store, threshold=2, clock=clock)
        lockout.register_failure(uid)
        lockout.register_failure(uid)
        lockout.reset(uid)
        user = store.get_by_id(uid)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
        assert lockout.seconds_remaining(user) == 0

    def test_unlock_unknown_user(self, store_and_user) -> None:
        store, _uid, clock = store_and_user
        lockout = LockoutController(store, clock=clock)
        assert lockout.unlock(99999) is False
        assert not lockout.register_failure(99999).locked


class TestConcurrentFailures:
    def test_parallel_failures_are_all_counted(self, tmp_path) -> None:
        # A file database: writers from several threads wait on SQLite's busy
        # timeout instead of failing on shared-cache table locks.
        engine = create_db_engine(f"sqlite:///{tmp_path / 'lockout.db'}")
        store = CredentialStore(engine)
        clock = FakeClock()
        uid = store.create_user(User(email="race@example.com", name="Race Test", password_hash="x"), clock())
        lockout = LockoutController(store, threshold=1000, clock=clock)
        workers, per_worker = 8, 5
        start = threading.Barrier(workers)

        def hammer() -> list[int]:
            start.wait()
            return [lockout.register_failure(uid).failed_attempts for _ in range(per_worker)]

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(hammer) for _ in range(workers)]
            seen = [count for future in futures for count in future.result()]

        total = workers * per_worker
        assert store.get_by_id(uid).failed_login_attempts == total
        assert sorted(seen) == list(range(1, total + 1)), "Every increment must observe a distinct count"
        engine.dispose()
