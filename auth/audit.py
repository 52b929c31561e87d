"""
auth/audit.py -- Buffered security audit log.

Events are appended to an in-memory deque and written to AuditStore in
batches. A batch is written when:
  - the buffer reaches batch_size,
  - the periodic flush loop fires (run_flush_loop, started by the API
    lifespan), or
  - a critical event arrives (written immediately).

Only one flush runs at a time (_flushing flag). A flush that starts while
another is in flight returns at once; the running flush keeps draining until
the buffer is empty, so the newcomer's events are not left behind.

On a persistence error the failed batch goes back to the *front* of the
buffer and the flush stops. Delivery is at-least-once: a batch whose insert
succeeded but whose commit acknowledgement was lost can be written twice, so
readers of audit_logs must tolerate duplicates.

Logging an event never raises into the request that produced it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from starlette.concurrency import run_in_threadpool

from auth.models import AuditEvent, AuditPage, AuditQuery, ClientContext, RiskLevel, SecurityMetrics
from auth.store import AuditStore
from core.config import utc_now

logger = logging.getLogger("learngate.audit")

# ---------------------------------------------------------------------------
# Event names
# ---------------------------------------------------------------------------

LOGIN_SUCCESS = "auth.login.success"
LOGIN_FAILURE = "auth.login.failure"
LOGOUT = "auth.logout"
LOGOUT_ALL = "auth.logout.all"
SESSION_EXPIRED = "auth.session.expired"
TOKEN_REFRESHED = "auth.token.refreshed"
TOKEN_REUSE = "auth.token.reuse_detected"
DEVICE_MISMATCH = "auth.device.mismatch"
PASSWORD_CHANGE = "auth.password.change"
PASSWORD_RESET_REQUESTED = "auth.password.reset.requested"
PASSWORD_RESET = "auth.password.reset"
PASSWORD_RESET_EMAIL_FAILED = "auth.password.reset.email_failed"
MFA_ENABLED = "auth.mfa.enabled"
MFA_DISABLED = "auth.mfa.disabled"
MFA_FAILURE = "auth.mfa.failure"
EMAIL_VERIFIED = "auth.email.verified"
REGISTER_EMAIL_EXISTS = "auth.register.email_exists"
USER_CREATED = "user.created"
ACCOUNT_LOCKED = "auth.account.locked"
ACCOUNT_UNLOCKED = "auth.account.unlocked"
RATE_LIMITED = "auth.rate_limited"

# Risk used when the caller does not pass one explicitly.
_DEFAULT_RISK: dict[str, RiskLevel] = {
    TOKEN_REUSE: RiskLevel.critical,
    DEVICE_MISMATCH: RiskLevel.high,
    PASSWORD_RESET_EMAIL_FAILED: RiskLevel.high,
    REGISTER_EMAIL_EXISTS: RiskLevel.high,
    ACCOUNT_LOCKED: RiskLevel.high,
    RATE_LIMITED: RiskLevel.high,
    MFA_FAILURE: RiskLevel.medium,
    MFA_DISABLED: RiskLevel.medium,
    PASSWORD_CHANGE: RiskLevel.medium,
    PASSWORD_RESET: RiskLevel.medium,
    ACCOUNT_UNLOCKED: RiskLevel.medium,
}


def login_risk(success: bool, reason: str | None = None) -> RiskLevel:
    """Success is low; failures caused by a lock or a rate limit are high; other failures medium."""
    if success:
        return RiskLevel.low
    if reason in ("account_locked", "rate_limited"):
        return RiskLevel.high
    return RiskLevel.medium


class AuditLogger:
    def __init__(
        self,
        store: AuditStore,
        batch_size: int = 50,
        retention_days: int = 365,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.batch_size = batch_size
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._buffer: deque[AuditEvent] = deque()
        self._flushing = False

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def log(
        self,
        event_type: str,
        success: bool = True,
        client: ClientContext | None = None,
        user_id: int | None = None,
        session_id: str | None = None,
        risk_level: RiskLevel | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        client = client or ClientContext()
        event = AuditEvent(
            event_type=event_type,
            timestamp=self._clock(),
            success=success,
            risk_level=risk_level or _DEFAULT_RISK.get(event_type, RiskLevel.low),
            user_id=user_id,
            session_id=session_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            details=details or {},
        )
        self._buffer.append(event)
        if event.risk_level in (RiskLevel.high, RiskLevel.critical):
            logger.warning("Security event %s (user=%s ip=%s)", event_type, user_id, client.ip_address)
        if event.risk_level == RiskLevel.critical or len(self._buffer) >= self.batch_size:
            await self.flush()
        return event

    async def log_login(
        self,
        success: bool,
        client: ClientContext,
        user_id: int | None = None,
        session_id: str | None = None,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        data = dict(details or {})
        if reason:
            data["reason"] = reason
        return await self.log(
            LOGIN_SUCCESS if success else LOGIN_FAILURE,
            success=success,
            client=client,
            user_id=user_id,
            session_id=session_id,
            risk_level=login_risk(success, reason),
            details=data,
        )

    @property
    def pending(self) -> int:
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self) -> int:
        """Write buffered events in batches. Returns how many were persisted."""
        if self._flushing:
            return 0
        self._flushing = True
        written = 0
        try:
            while self._buffer:
                batch = [self._buffer.popleft() for _ in range(min(self.batch_size, len(self._buffer)))]
                try:
                    await run_in_threadpool(self._store.insert_events, batch)
                except Exception:
                    # extendleft reverses its input; reverse first to keep order.
                    self._buffer.extendleft(reversed(batch))
                    logger.exception("Audit flush failed; %d event(s) re-queued", len(batch))
                    break
                written += len(batch)
        finally:
            self._flushing = False
        return written

    async def run_flush_loop(self, interval_seconds: float) -> None:
        """Flush forever every `interval_seconds`. Cancelled by the lifespan on shutdown."""
        while True:
            await asyncio.sleep(interval_seconds)
            await self.flush()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup(self) -> int:
        """Delete persisted events older than the retention window."""
        cutoff = self._clock() - self.retention
        deleted = await run_in_threadpool(self._store.delete_before, cutoff)
        if deleted:
            logger.info("Audit retention removed %d event(s) older than %s", deleted, cutoff.date())
        return deleted

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def search(self, query: AuditQuery) -> AuditPage:
        events, total = self._store.search(query)
        return AuditPage(events=events, total=total, limit=query.limit, offset=query.offset)

    def metrics(self, since: datetime) -> SecurityMetrics:
        counts = self._store.counts_since(since)

        def count(*event_types: str) -> int:
            return sum(n for event_type, _risk, n in counts if event_type in event_types)

        return SecurityMetrics(
            total_events=sum(n for _e, _r, n in counts),
            successful_logins=count(LOGIN_SUCCESS),
            failed_logins=count(LOGIN_FAILURE),
            account_lockouts=count(ACCOUNT_LOCKED),
            suspicious_activities=sum(
                n for _e, risk, n in counts if risk in (RiskLevel.high.value, RiskLevel.critical.value)
            ),
            password_changes=count(PASSWORD_CHANGE, PASSWORD_RESET),
        )
