"""
API request and response models for learngate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditEvent, Invitation, PasswordValidationResult, SecurityMetrics, Session, User
from core.config import to_iso

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", something on each side, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _normalize_email(value: str) -> str:
    return str(value).strip().lower()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    student = "student"
    instructor = "instructor"
    admin = "admin"


class RiskLevelEnum(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class MetricsPeriodEnum(str, Enum):
    day = "day"
    week = "week"
    month = "month"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    mfa_code is only needed for accounts with two-factor enabled; the first
    attempt without it answers {"mfa_required": true}.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=1024)
    mfa_code: Optional[str] = Field(default=None, max_length=10)
    remember_me: bool = False

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=1024)
    name: str = Field(min_length=1, max_length=100)
    invite_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class PasswordResetComplete(BaseModel):
    """Request body for PUT /api/v1/auth/password-reset."""

    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=1024)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(max_length=1024)
    name: str = Field(default="", max_length=100)
    email: str = Field(default="", max_length=254)


class ProfilePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=10)


class MfaDisableRequest(BaseModel):
    password: str = Field(min_length=1, max_length=1024)
    code: str = Field(min_length=6, max_length=10)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh; the cookie is used when absent."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class InvitationCreate(BaseModel):
    """Request body for POST /api/v1/admin/invitations.

    email, when set, restricts the invitation to that address.
    """

    role: RoleEnum = RoleEnum.student
    email: Optional[str] = Field(default=None, max_length=254, pattern=EMAIL_PATTERN)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user record. Never includes hashes or MFA secrets."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    status: str
    email_verified: bool
    mfa_enabled: bool
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            status=user.status,
            email_verified=user.email_verified,
            mfa_enabled=user.mfa_enabled,
            created_at=to_iso(user.created_at) if user.created_at else None,
            last_login_at=to_iso(user.last_login_at) if user.last_login_at else None,
        )


class LoginResponse(BaseModel):
    """Response for a completed login. Tokens are also set as httpOnly cookies."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    password_change_required: bool = False


class MfaRequiredResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    mfa_required: bool = True
    message: str = "Two-factor authentication code required."


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    message: str = "Account created. Please check your email to verify your address."


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class CountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    count: int


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: str
    last_activity_at: str
    expires_at: str
    ip_address: str
    user_agent: str
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: str) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=to_iso(session.created_at),
            last_activity_at=to_iso(session.last_activity_at),
            expires_at=to_iso(session.expires_at),
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.id == current_id,
        )


class PasswordStrengthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    score: int
    strength: str
    errors: list[str]
    warnings: list[str]
    estimated_crack_time: str

    @classmethod
    def from_result(cls, result: PasswordValidationResult) -> "PasswordStrengthResponse":
        return cls(
            is_valid=result.is_valid,
            score=result.score,
            strength=result.strength,
            errors=list(result.errors),
            warnings=list(result.warnings),
            estimated_crack_time=result.estimated_crack_time,
        )


class MfaSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event_type: str
    timestamp: str
    success: bool
    risk_level: str
    user_id: Optional[int]
    session_id: Optional[str]
    ip_address: str
    user_agent: str
    details: dict

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            timestamp=to_iso(event.timestamp),
            success=event.success,
            risk_level=str(event.risk_level.value),
            user_id=event.user_id,
            session_id=event.session_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.details,
        )


class AuditPageResponse(BaseModel):
    """Response for GET /api/v1/admin/audit-logs."""

    model_config = ConfigDict(frozen=True)

    events: list[AuditEventResponse]
    total: int
    limit: int
    offset: int


class SecurityMetricsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    period: MetricsPeriodEnum
    since: str
    total_events: int
    successful_logins: int
    failed_logins: int
    account_lockouts: int
    suspicious_activities: int
    password_changes: int

    @classmethod
    def from_metrics(cls, metrics: SecurityMetrics, period: MetricsPeriodEnum, since: str) -> "SecurityMetricsResponse":
        return cls(
            period=period,
            since=since,
            total_events=metrics.total_events,
            successful_logins=metrics.successful_logins,
            failed_logins=metrics.failed_logins,
            account_lockouts=metrics.account_lockouts,
            suspicious_activities=metrics.suspicious_activities,
            password_changes=metrics.password_changes,
        )


class InvitationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    role: str
    email: Optional[str]
    created_at: str

    @classmethod
    def from_invitation(cls, invitation: Invitation) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            code=invitation.code,
            role=invitation.role,
            email=invitation.email,
            created_at=to_iso(invitation.created_at),
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    feedback carries password-policy messages; retry_after mirrors the
    Retry-After header on 423 and 429 responses.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    feedback: Optional[list[str]] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
