"""
auth/sessions.py -- Server-side session lifecycle.

A session is created on every successful login and referenced by the "sid"
claim of both tokens. Tokens alone are not enough to stay logged in: every
authenticated request also validates the session, so logout and
logout-everywhere take effect immediately rather than at token expiry.

Two independent timeouts, whichever comes first ends the session:
  - absolute: expires_at = created_at + session_absolute_hours
  - inactivity: now - last_activity_at >= session_inactivity_minutes

Concurrent sessions per user are capped; creating one beyond the cap evicts
the oldest active ones (see SessionStore.create for the atomicity story).
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.models import ClientContext, Session
from auth.store import SessionStore
from auth.tokens import device_fingerprint
from core.config import Settings, utc_now

logger = logging.getLogger("learngate.auth")


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        absolute_hours: int = 8,
        inactivity_minutes: int = 30,
        max_concurrent: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.absolute_timeout = timedelta(hours=absolute_hours)
        self.inactivity_timeout = timedelta(minutes=inactivity_minutes)
        self.max_concurrent = max_concurrent
        self._clock = clock

    @classmethod
    def from_settings(
        cls, store: SessionStore, settings: Settings, clock: Callable[[], datetime] = utc_now
    ) -> "SessionManager":
        return cls(
            store,
            absolute_hours=settings.session_absolute_hours,
            inactivity_minutes=settings.session_inactivity_minutes,
            max_concurrent=settings.max_concurrent_sessions,
            clock=clock,
        )

    def create(self, user_id: int, client: ClientContext) -> Session:
        now = self._clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.absolute_timeout,
            last_activity_at=now,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_fingerprint=device_fingerprint(client.user_agent, client.ip_address),
        )
        evicted = self._store.create(session, self.max_concurrent)
        if evicted:
            logger.info("User %s hit the session cap; evicted %d oldest session(s)", user_id, evicted)
        return session

    def validate(self, session_id: str, touch: bool = True) -> Session | None:
        """Return the live session, or None if it is inactive, expired, or idle.

        Expired and idle sessions are deactivated on the way out so later
        lookups (and the session list) agree.
        """
        session = self._store.get(session_id)
        if session is None or not session.is_active:
            return None
        now = self._clock()
        if now >= session.expires_at:
            self._store.deactivate(session_id, "expired")
            return None
        if now - session.last_activity_at >= self.inactivity_timeout:
            self._store.deactivate(session_id, "idle")
            return None
        if touch:
            self._store.touch(session_id, now)
            session.last_activity_at = now
        return session

    def touch(self, session_id: str) -> bool:
        return self._store.touch(session_id, self._clock())

    def invalidate(self, session_id: str, reason: str = "logout") -> bool:
        return self._store.deactivate(session_id, reason)

    def invalidate_all(self, user_id: int, reason: str = "logout_all", except_session_id: str | None = None) -> int:
        return self._store.deactivate_all(user_id, reason, except_session_id=except_session_id)

    def list_active(self, user_id: int) -> list[Session]:
        """Active sessions that are still within both timeouts, newest first."""
        now = self._clock()
        return [
            s
            for s in self._store.list_active(user_id)
            if now < s.expires_at and now - s.last_activity_at < self.inactivity_timeout
        ]

    def cleanup_expired(self) -> int:
        """Deactivate stale sessions and delete those past their absolute lifetime."""
        now = self._clock()
        ended = self._store.expire_stale(now, now - self.inactivity_timeout)
        deleted = self._store.delete_expired(now)
        if ended or deleted:
            logger.info("Session cleanup: %d ended, %d deleted", ended, deleted)
        return deleted
