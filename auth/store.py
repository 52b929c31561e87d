"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
CredentialStore, SessionStore and AuditStore are the repositories; the
_row_to_* functions at the bottom are the mappers. Service code never
touches SQL directly.

All three repositories share one Engine built by create_db_engine(), so a
deployment has a single database file and a single connection pool.

Concurrency:
  Two writes must be atomic at the store layer, not read-then-write in
  separate round trips:
    - register_failed_login(): one UPDATE computes the new counter and the
      lock timestamp from the row's current values.
    - SessionStore.create(): INSERT plus one eviction UPDATE inside the same
      transaction (engine.begin()).
  Single-use tokens and invitations are consumed with a guarded UPDATE
  (... WHERE used_at IS NULL) and rowcount == 1 decides the winner.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as fixed-width UTC ISO strings (core.config.to_iso) so
string comparison in SQL is chronological comparison.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    null,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import (
    AuditEvent,
    AuditQuery,
    Invitation,
    OneTimeToken,
    PasswordHistoryEntry,
    RiskLevel,
    Session,
    User,
)
from core.config import from_iso, to_iso

logger = logging.getLogger("learngate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # lowercased
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="student"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", String(64)),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("password_changed_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_sessions = Table(
    "sessions",
    _metadata,
    # seq gives a strict creation order even when two sessions share a timestamp.
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("last_activity_at", String(32), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("device_fingerprint", String(64), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("ended_reason", String(30)),
)

_one_time_tokens = Table(
    "one_time_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("purpose", String(30), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("used_at", String(32)),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("email", String(320)),
    Column("role", String(30), nullable=False),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("used_by", Integer),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(60), nullable=False, index=True),
    Column("user_id", Integer, index=True),
    Column("session_id", String(64)),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("timestamp", String(32), nullable=False, index=True),
    Column("success", Integer, nullable=False),
    Column("details", Text),  # JSON object
    Column("risk_level", String(10), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Build the shared Engine and create any missing tables."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, password history, one-time tokens and invitations.

    Usage:
        store = CredentialStore(create_db_engine("sqlite:///learngate.db"))
        uid = store.create_user(User(email="a@b.c", name="A", password_hash=h), now)
        user = store.get_by_email("A@B.C")   # case-insensitive
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime) -> int:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a conflict -- two registrations raced.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    status=user.status,
                    email_verified=1 if user.email_verified else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_secret=user.mfa_secret,
                    failed_login_attempts=0,
                    password_changed_at=to_iso(now),
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.email == email.strip().lower())
            ).scalar()
        return (count or 0) > 0

    def _update_user(self, user_id: int, now: datetime, **fields) -> bool:
        fields["updated_at"] = to_iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_profile(self, user_id: int, name: str, now: datetime) -> bool:
        return self._update_user(user_id, now, name=name)

    def update_password(self, user_id: int, password_hash: str, now: datetime) -> bool:
        return self._update_user(user_id, now, password_hash=password_hash, password_changed_at=to_iso(now))

    def record_login(self, user_id: int, now: datetime) -> bool:
        return self._update_user(user_id, now, last_login_at=to_iso(now))

    def set_mfa(self, user_id: int, enabled: bool, secret: str | None, now: datetime) -> bool:
        return self._update_user(user_id, now, mfa_enabled=1 if enabled else 0, mfa_secret=secret)

    def set_email_verified(self, user_id: int, now: datetime) -> bool:
        return self._update_user(user_id, now, email_verified=1)

    def set_status(self, user_id: int, status: str, now: datetime) -> bool:
        return self._update_user(user_id, now, status=status)

    # ------------------------------------------------------------------
    # Failed-login counter
    # ------------------------------------------------------------------

    def register_failed_login(
        self,
        user_id: int,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> tuple[int, datetime | None] | None:
        """Atomically count one failed login and lock the account at the threshold.

        One UPDATE evaluates every SET expression against the row as it was
        before the statement, so concurrent failures cannot overwrite each
        other's increments:

          count  = 1                     if a previous lock has expired
                   count + 1             otherwise
          locked = lock_until            if new count >= threshold
                   NULL                  if a previous lock has expired
                   unchanged             otherwise

        Returns (failed_login_attempts, locked_until) as stored after the
        update, or None if the user does not exist.
        """
        now_iso = to_iso(now)
        lock_expired = and_(_users.c.locked_until.is_not(None), _users.c.locked_until <= now_iso)
        new_count = case((lock_expired, 1), else_=_users.c.failed_login_attempts + 1)
        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                failed_login_attempts=new_count,
                locked_until=case(
                    (new_count >= threshold, to_iso(lock_until)),
                    (lock_expired, null()),
                    else_=_users.c.locked_until,
                ),
                updated_at=now_iso,
            )
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                return None
            row = conn.execute(
                select(_users.c.failed_login_attempts, _users.c.locked_until).where(_users.c.id == user_id)
            ).fetchone()
        return row.failed_login_attempts, from_iso(row.locked_until)

    def reset_failed_logins(self, user_id: int, now: datetime) -> bool:
        return self._update_user(user_id, now, failed_login_attempts=0, locked_until=None)

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def add_password_history(self, user_id: int, password_hash: str, now: datetime, limit: int) -> None:
        """Append a hash and deactivate everything beyond the newest `limit` entries.

        Entries are never deleted here -- only flagged inactive.
        """
        newest = (
            select(_password_history.c.id)
            .where(_password_history.c.user_id == user_id, _password_history.c.is_active == 1)
            .order_by(_password_history.c.id.desc())
            .limit(limit)
        )
        with self.engine.begin() as conn:
            conn.execute(
                _password_history.insert().values(
                    user_id=user_id,
                    password_hash=password_hash,
                    created_at=to_iso(now),
                    is_active=1,
                )
            )
            conn.execute(
                _password_history.update()
                .where(
                    _password_history.c.user_id == user_id,
                    _password_history.c.is_active == 1,
                    _password_history.c.id.not_in(newest),
                )
                .values(is_active=0)
            )

    def get_password_history(
        self, user_id: int, limit: int | None = None, active_only: bool = True
    ) -> list[PasswordHistoryEntry]:
        """Return history entries, newest first."""
        stmt = _password_history.select().where(_password_history.c.user_id == user_id)
        if active_only:
            stmt = stmt.where(_password_history.c.is_active == 1)
        stmt = stmt.order_by(_password_history.c.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_history(r) for r in rows]

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> int:
        """Store a token, voiding any earlier unused token for the same purpose."""
        with self.engine.begin() as conn:
            conn.execute(
                _one_time_tokens.update()
                .where(
                    _one_time_tokens.c.user_id == token.user_id,
                    _one_time_tokens.c.purpose == token.purpose,
                    _one_time_tokens.c.used_at.is_(None),
                )
                .values(used_at=to_iso(token.created_at))
            )
            result = conn.execute(
                _one_time_tokens.insert().values(
                    user_id=token.user_id,
                    purpose=token.purpose,
                    token_hash=token.token_hash,
                    expires_at=to_iso(token.expires_at),
                    created_at=to_iso(token.created_at),
                )
            )
        return result.inserted_primary_key[0]

    def get_one_time_token(self, token_hash: str, purpose: str) -> OneTimeToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _one_time_tokens.select().where(
                    _one_time_tokens.c.token_hash == token_hash,
                    _one_time_tokens.c.purpose == purpose,
                )
            ).fetchone()
        return _row_to_one_time_token(row) if row is not None else None

    def consume_one_time_token(self, token_id: int, now: datetime) -> bool:
        """Mark a token used. False if someone else already used it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _one_time_tokens.update()
                .where(_one_time_tokens.c.id == token_id, _one_time_tokens.c.used_at.is_(None))
                .values(used_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _invitations.insert().values(
                    code=invitation.code,
                    email=invitation.email.strip().lower() if invitation.email else None,
                    role=invitation.role,
                    created_by=invitation.created_by,
                    created_at=to_iso(invitation.created_at),
                )
            )
            conn.commit()
        return result.inserted_primary_key[0]

    def get_invitation(self, code: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.code == code)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def consume_invitation(self, code: str, user_id: int, now: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _invitations.update()
                .where(_invitations.c.code == code, _invitations.c.used_at.is_(None))
                .values(used_at=to_iso(now), used_by=user_id)
            )
            conn.commit()
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for server-side session records."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, session: Session, max_active: int) -> int:
        """Insert a session and evict the user's oldest active sessions beyond max_active.

        Both statements run in one transaction, and the eviction is a single
        UPDATE keyed on a "newest N" subquery, so two concurrent logins cannot
        both slip under the cap. Returns the number of sessions evicted.
        """
        newest = (
            select(_sessions.c.seq)
            .where(_sessions.c.user_id == session.user_id, _sessions.c.is_active == 1)
            .order_by(_sessions.c.seq.desc())
            .limit(max_active)
        )
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    session_id=session.id,
                    user_id=session.user_id,
                    created_at=to_iso(session.created_at),
                    expires_at=to_iso(session.expires_at),
                    last_activity_at=to_iso(session.last_activity_at),
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    device_fingerprint=session.device_fingerprint,
                    is_active=1,
                )
            )
            result = conn.execute(
                _sessions.update()
                .where(
                    _sessions.c.user_id == session.user_id,
                    _sessions.c.is_active == 1,
                    _sessions.c.seq.not_in(newest),
                )
                .values(is_active=0, ended_reason="evicted")
            )
        return result.rowcount

    def get(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch(self, session_id: str, now: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.session_id == session_id, _sessions.c.is_active == 1)
                .values(last_activity_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate(self, session_id: str, reason: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.session_id == session_id, _sessions.c.is_active == 1)
                .values(is_active=0, ended_reason=reason)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_all(self, user_id: int, reason: str, except_session_id: str | None = None) -> int:
        stmt = _sessions.update().where(_sessions.c.user_id == user_id, _sessions.c.is_active == 1)
        if except_session_id is not None:
            stmt = stmt.where(_sessions.c.session_id != except_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(stmt.values(is_active=0, ended_reason=reason))
            conn.commit()
        return result.rowcount

    def list_active(self, user_id: int) -> list[Session]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(_sessions.c.user_id == user_id, _sessions.c.is_active == 1)
                .order_by(_sessions.c.seq.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def expire_stale(self, now: datetime, idle_cutoff: datetime) -> int:
        """Deactivate active sessions past their absolute expiry or idle since idle_cutoff."""
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    _sessions.c.is_active == 1,
                    (_sessions.c.expires_at <= now_iso) | (_sessions.c.last_activity_at <= to_iso(idle_cutoff)),
                )
                .values(
                    is_active=0,
                    ended_reason=case((_sessions.c.expires_at <= now_iso, "expired"), else_="idle"),
                )
            )
            conn.commit()
        return result.rowcount

    def delete_expired(self, now: datetime) -> int:
        """Physically remove sessions whose absolute lifetime is over."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= to_iso(now)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditStore:
    """Repository for persisted audit events."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert_events(self, events: list[AuditEvent]) -> None:
        """Insert a batch in one transaction -- all rows land or none do."""
        if not events:
            return
        rows = [
            {
                "event_type": e.event_type,
                "user_id": e.user_id,
                "session_id": e.session_id,
                "ip_address": e.ip_address,
                "user_agent": e.user_agent,
                "timestamp": to_iso(e.timestamp),
                "success": 1 if e.success else 0,
                "details": json.dumps(e.details, default=str),
                "risk_level": RiskLevel(e.risk_level).value,
            }
            for e in events
        ]
        with self.engine.begin() as conn:
            conn.execute(_audit_logs.insert(), rows)

    def search(self, query: AuditQuery) -> tuple[list[AuditEvent], int]:
        """Return (page of events newest first, total matching count)."""
        conditions = []
        if query.user_id is not None:
            conditions.append(_audit_logs.c.user_id == query.user_id)
        if query.event_type:
            conditions.append(_audit_logs.c.event_type == query.event_type)
        if query.ip_address:
            conditions.append(_audit_logs.c.ip_address == query.ip_address)
        if query.risk_level is not None:
            conditions.append(_audit_logs.c.risk_level == RiskLevel(query.risk_level).value)
        if query.start is not None:
            conditions.append(_audit_logs.c.timestamp >= to_iso(query.start))
        if query.end is not None:
            conditions.append(_audit_logs.c.timestamp <= to_iso(query.end))

        page = _audit_logs.select()
        total_stmt = select(func.count()).select_from(_audit_logs)
        if conditions:
            page = page.where(and_(*conditions))
            total_stmt = total_stmt.where(and_(*conditions))
        page = (
            page.order_by(_audit_logs.c.timestamp.desc(), _audit_logs.c.id.desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(page).fetchall()
            total = conn.execute(total_stmt).scalar() or 0
        return [_row_to_audit_event(r) for r in rows], total

    def counts_since(self, since: datetime) -> list[tuple[str, str, int]]:
        """Return (event_type, risk_level, count) groups for events at or after `since`."""
        stmt = (
            select(_audit_logs.c.event_type, _audit_logs.c.risk_level, func.count().label("n"))
            .where(_audit_logs.c.timestamp >= to_iso(since))
            .group_by(_audit_logs.c.event_type, _audit_logs.c.risk_level)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [(r.event_type, r.risk_level, r.n) for r in rows]

    def delete_before(self, cutoff: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_audit_logs.delete().where(_audit_logs.c.timestamp < to_iso(cutoff)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        status=row.status,
        email_verified=bool(row.email_verified),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        failed_login_attempts=row.failed_login_attempts,
        locked_until=from_iso(row.locked_until),
        password_changed_at=from_iso(row.password_changed_at),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_history(row) -> PasswordHistoryEntry:
    return PasswordHistoryEntry(
        id=row.id,
        user_id=row.user_id,
        password_hash=row.password_hash,
        created_at=from_iso(row.created_at),
        is_active=bool(row.is_active),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.session_id,
        user_id=row.user_id,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        last_activity_at=from_iso(row.last_activity_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_fingerprint=row.device_fingerprint,
        is_active=bool(row.is_active),
        ended_reason=row.ended_reason,
    )


def _row_to_one_time_token(row) -> OneTimeToken:
    return OneTimeToken(
        id=row.id,
        user_id=row.user_id,
        purpose=row.purpose,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        used_at=from_iso(row.used_at),
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        code=row.code,
        email=row.email,
        role=row.role,
        created_by=row.created_by,
        created_at=from_iso(row.created_at),
        used_at=from_iso(row.used_at),
        used_by=row.used_by,
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event_type=row.event_type,
        user_id=row.user_id,
        session_id=row.session_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=from_iso(row.timestamp),
        success=bool(row.success),
        details=json.loads(row.details) if row.details else {},
        risk_level=RiskLevel(row.risk_level),
    )
