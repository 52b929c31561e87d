"""
auth/lockout.py -- Failed-login counting and timed account lockout.

State machine per credential record:

    Unlocked --fail (count < threshold)--> Unlocked, count + 1
    Unlocked --fail (count == threshold)--> Locked until now + duration
    Locked   --time passes--------------> Unlocked (count restarts on next failure)
    any      --successful login---------> Unlocked, count 0

The counter update is delegated to CredentialStore.register_failed_login(),
a single conditional UPDATE, so two concurrent failures for the same user
both count.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.models import LockoutState, User
from auth.store import CredentialStore
from core.config import utc_now

logger = logging.getLogger("learngate.auth")


class LockoutController:
    def __init__(
        self,
        store: CredentialStore,
        threshold: int = 5,
        lockout_minutes: int = 15,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.threshold = threshold
        self.duration = timedelta(minutes=lockout_minutes)
        self._clock = clock

    def seconds_remaining(self, user: User) -> int:
        """Seconds left on the user's lock, 0 if unlocked or the lock has lapsed."""
        if user.locked_until is None:
            return 0
        remaining = (user.locked_until - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def register_failure(self, user_id: int) -> LockoutState:
        now = self._clock()
        lock_until = now + self.duration
        stored = self._store.register_failed_login(user_id, self.threshold, lock_until, now)
        if stored is None:
            return LockoutState(failed_attempts=0, locked_until=None, locked=False)
        attempts, locked_until = stored
        locked = locked_until is not None and locked_until > now
        if locked and attempts == self.threshold:
            logger.warning("Account %s locked after %d failed attempts", user_id, attempts)
        return LockoutState(failed_attempts=attempts, locked_until=locked_until, locked=locked)

    def reset(self, user_id: int) -> None:
        self._store.reset_failed_logins(user_id, self._clock())

    def unlock(self, user_id: int) -> bool:
        """Administrative unlock. Same effect as a successful login on the counters."""
        return self._store.reset_failed_logins(user_id, self._clock())
