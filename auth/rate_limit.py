"""
auth/rate_limit.py -- Fixed-window rate limiter for credential endpoints.

slowapi (api/limiter.py) covers coarse per-route limits. Credential endpoints
need something it does not offer: keys built from request *content* (the
email being reset, the user completing MFA), a structured result the service
can turn into an Err with retry_after, and a clock tests can move.

Algorithm (per key):
  - no counter, or the window has elapsed -> new window, count = 1, allowed
  - count >= max_attempts                 -> denied; retry_after = rest of window
  - otherwise                             -> count += 1, allowed

Window reset is lazy: nothing runs on a timer per key. Expired counters are
pruned by prune(), called opportunistically from check() and from the API's
maintenance loop.

Concurrency: state is process-local and owned by the instance. check() has
no await point, so on a single event loop it runs atomically. Multiple
worker processes each keep their own counters -- sharing them requires an
external store and is not done here.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import RateLimitPolicy, RateLimitResult
from core.config import utc_now

logger = logging.getLogger("learngate.auth")


@dataclass
class _Window:
    count: int
    window_start: datetime
    window: timedelta


class FixedWindowRateLimiter:
    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        prune_interval_seconds: float = 300.0,
    ) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._prune_interval = timedelta(seconds=prune_interval_seconds)
        self._last_prune = clock()

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Count one attempt against `key` and say whether it may proceed."""
        now = self._clock()
        if now - self._last_prune >= self._prune_interval:
            self.prune()

        window = timedelta(seconds=policy.window_seconds)
        entry = self._windows.get(key)

        if entry is None or now - entry.window_start > window:
            self._windows[key] = _Window(count=1, window_start=now, window=window)
            return RateLimitResult(
                allowed=True,
                remaining=max(policy.max_attempts - 1, 0),
                reset_time=now + window,
            )

        reset_time = entry.window_start + window
        if entry.count >= policy.max_attempts:
            retry_after = max(1, math.ceil((reset_time - now).total_seconds()))
            logger.info("Rate limit hit for %s (retry in %ds)", key.split(":", 1)[0], retry_after)
            return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time, retry_after=retry_after)

        entry.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=policy.max_attempts - entry.count,
            reset_time=reset_time,
        )

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def prune(self) -> int:
        """Drop counters whose window has ended. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now - w.window_start > w.window]
        for key in expired:
            del self._windows[key]
        self._last_prune = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)
