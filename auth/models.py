"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores map rows
to these; services and routes pass them around. Timestamps are aware UTC
datetimes here -- the stores own the conversion to and from ISO strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

ROLES = ("student", "instructor", "admin")


@dataclass
class User:
    """A credential record.

    email is always stored lowercased -- lookups are case-insensitive.
    status is a soft lifecycle field ("active", "suspended", "deleted");
    rows are never physically removed.

    locked_until in the future means every login is refused, even with the
    right password. An expired lock is treated as no lock at all.
    """

    email: str
    name: str
    password_hash: str
    role: str = "student"
    id: int | None = None
    status: str = "active"
    email_verified: bool = False
    mfa_enabled: bool = False
    mfa_secret: str | None = None
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    password_changed_at: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class PasswordHistoryEntry:
    user_id: int
    password_hash: str
    created_at: datetime
    is_active: bool = True
    id: int | None = None


@dataclass
class OneTimeToken:
    """A single-use emailed token (password reset, email verification).

    Only the SHA-256 of the raw token is stored; the raw value leaves the
    process exactly once, inside the email.
    """

    user_id: int
    purpose: str  # "password_reset" | "email_verification"
    token_hash: str
    expires_at: datetime
    created_at: datetime
    used_at: datetime | None = None
    id: int | None = None


@dataclass
class Invitation:
    """Registration invite. role is granted to whoever redeems it."""

    code: str
    role: str
    created_at: datetime
    email: str | None = None  # when set, only this address may redeem
    created_by: int | None = None
    used_at: datetime | None = None
    used_by: int | None = None
    id: int | None = None


# ---------------------------------------------------------------------------
# Sessions and tokens
# ---------------------------------------------------------------------------


@dataclass
class Session:
    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_address: str
    user_agent: str
    device_fingerprint: str
    is_active: bool = True
    ended_reason: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    session_id: str
    role: str
    device_fingerprint: str
    token_type: str  # "access" | "refresh"
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int  # seconds
    refresh_expires_in: int


@dataclass(frozen=True)
class ClientContext:
    """Who is on the other end of the request."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"


@dataclass(frozen=True)
class AuthContext:
    """What get_current_user() resolves to: the user plus the proof of login."""

    user: User
    session: Session
    claims: TokenClaims
    access_token: str


# ---------------------------------------------------------------------------
# Rate limiting and lockout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after: int | None = None  # seconds; only set when denied


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int
    locked_until: datetime | None
    locked: bool  # True when this failure is the one that tripped the lock


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordValidationResult:
    is_valid: bool
    score: int  # 0-100
    strength: str  # very_weak | weak | fair | good | strong
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    estimated_crack_time: str


@dataclass(frozen=True)
class PasswordAge:
    days_since_change: int
    must_change: bool
    days_until_expiry: int


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: datetime
    success: bool
    risk_level: RiskLevel = RiskLevel.low
    user_id: int | None = None
    session_id: str | None = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    details: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


@dataclass(frozen=True)
class AuditQuery:
    user_id: int | None = None
    event_type: str | None = None
    ip_address: str | None = None
    risk_level: RiskLevel | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class AuditPage:
    events: list[AuditEvent]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class SecurityMetrics:
    total_events: int
    successful_logins: int
    failed_logins: int
    account_lockouts: int
    suspicious_activities: int
    password_changes: int
