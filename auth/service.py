"""
auth/service.py -- AuthService: the orchestrator behind every auth endpoint.

One AuthService is built at process start (build_auth_service) and stored on
app.state. It owns the long-lived, stateful components -- rate limiter
counters, token blacklist, audit buffer -- so nothing in this package is a
module-level singleton and tests can build as many isolated instances as
they like.

Every public operation returns Ok(value) or Err(kind, message). Expected
failures never raise; route handlers translate kinds to HTTP statuses.

Login pipeline:
    rate limit (login:<ip>)
      -> lock check                       423
      -> bcrypt verify (dummy hash when the email is unknown)
      -> wrong password: count failure     401, or 423 when this one locks
      -> inactive account                 401 (same generic message)
      -> MFA                              {mfa_required} / 401
      -> reset counter, create session, issue tokens, audit

Blocking work (bcrypt, SMTP and every store call) runs in the threadpool,
so a request waiting on the database does not stall the event loop. Emails
are dispatched as background tasks so response time does not depend on
whether an account exists; wait_for_background() drains them (used at
shutdown and in tests).

Synchronous helpers (get_profile, list_sessions, create_invitation) touch
the database directly; async callers hand them to run_in_threadpool and the
routes that use them are plain `def` endpoints.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from auth import audit as events
from auth import mfa
from auth.audit import AuditLogger
from auth.emailer import EmailSender
from auth.errors import GENERIC_LOGIN_FAILURE, Err, ErrorKind, Ok, Result
from auth.lockout import LockoutController
from auth.models import (
    ROLES,
    AuditPage,
    AuditQuery,
    AuthContext,
    ClientContext,
    Invitation,
    OneTimeToken,
    PasswordValidationResult,
    RateLimitPolicy,
    RiskLevel,
    SecurityMetrics,
    Session,
    TokenPair,
    User,
)
from auth.password_policy import PasswordPolicy
from auth.passwords import dummy_hash, hash_password, verify_password
from auth.rate_limit import FixedWindowRateLimiter
from auth.sessions import SessionManager
from auth.store import AuditStore, CredentialStore, SessionStore, create_db_engine
from auth.tokens import TokenService, device_fingerprint
from core.config import Settings, to_iso, utc_now

logger = logging.getLogger("learngate.auth")

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"

_RESET_TOKEN_TTL = timedelta(hours=1)
_VERIFY_TOKEN_TTL = timedelta(hours=24)

METRIC_PERIODS = {"day": 1, "week": 7, "month": 30}

# Returned for every well-formed reset request, whether or not the account exists.
RESET_REQUESTED_MESSAGE = "If an account exists for that email, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginOutcome:
    """Successful credential check.

    mfa_required=True means the password was right but a TOTP code is still
    needed; tokens and session are None in that case.
    """

    user: User
    tokens: TokenPair | None = None
    session: Session | None = None
    mfa_required: bool = False
    mfa_verified: bool = False
    password_change_required: bool = False


@dataclass(frozen=True)
class RefreshOutcome:
    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    provisioning_uri: str


def _hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _feedback(report: PasswordValidationResult) -> tuple[str, ...]:
    if report.errors:
        return report.errors
    return (f"Password is too weak (strength: {report.strength}).",) + report.warnings


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        sessions: SessionManager,
        tokens: TokenService,
        rate_limiter: FixedWindowRateLimiter,
        lockout: LockoutController,
        policy: PasswordPolicy,
        audit: AuditLogger,
        mailer: EmailSender,
        clock: Callable[[], datetime] = utc_now,
        engine: Engine | None = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.policy = policy
        self.audit = audit
        self.mailer = mailer
        self._clock = clock
        self._engine = engine
        self._background: set[asyncio.Task] = set()

        self.login_limit = RateLimitPolicy(settings.login_rate_max, settings.login_rate_window_seconds)
        self.register_limit = RateLimitPolicy(settings.register_rate_max, settings.register_rate_window_seconds)
        self.reset_limit = RateLimitPolicy(
            settings.password_reset_rate_max, settings.password_reset_rate_window_seconds
        )
        self.mfa_limit = RateLimitPolicy(settings.mfa_rate_max, settings.mfa_rate_window_seconds)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _hash(self, password: str) -> str:
        return await run_in_threadpool(hash_password, password, self.settings.bcrypt_rounds)

    async def _verify(self, password: str, password_hash: str) -> bool:
        return await run_in_threadpool(verify_password, password, password_hash)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _rate_limited(self, key: str, policy: RateLimitPolicy, message: str) -> Err | None:
        result = self.rate_limiter.check(key, policy)
        if result.allowed:
            return None
        return Err(ErrorKind.RATE_LIMITED, message, retry_after=result.retry_after)

    async def _check_new_password(self, user: User, password: str) -> Err | None:
        """Policy check for a password change, including reuse of recent passwords."""
        entries = await run_in_threadpool(
            self.credentials.get_password_history, user.id, limit=self.policy.history_limit
        )
        history = [entry.password_hash for entry in entries]
        report = await run_in_threadpool(
            self.policy.validate, password, {"name": user.name, "email": user.email}, history
        )
        if report.is_valid:
            return None
        return Err(
            ErrorKind.VALIDATION,
            "Password does not meet the security requirements.",
            feedback=_feedback(report),
        )

    async def _store_new_password(self, user: User, password: str) -> None:
        password_hash = await self._hash(password)
        now = self._clock()
        await run_in_threadpool(self.credentials.update_password, user.id, password_hash, now)
        await run_in_threadpool(
            self.credentials.add_password_history, user.id, password_hash, now, self.policy.history_limit
        )

    async def _issue_one_time_token(self, user: User, purpose: str, ttl: timedelta) -> str:
        raw = secrets.token_urlsafe(32)
        now = self._clock()
        await run_in_threadpool(
            self.credentials.create_one_time_token,
            OneTimeToken(
                user_id=user.id,
                purpose=purpose,
                token_hash=_hash_token(raw),
                expires_at=now + ttl,
                created_at=now,
            ),
        )
        return raw

    async def _redeem_one_time_token(self, raw: str, purpose: str) -> OneTimeToken | None:
        record = await run_in_threadpool(self.credentials.get_one_time_token, _hash_token(raw), purpose)
        if record is None or record.used_at is not None or record.expires_at <= self._clock():
            return None
        return record

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        client: ClientContext,
        mfa_code: str | None = None,
        remember_me: bool = False,
    ) -> Result[LoginOutcome]:
        email = email.strip().lower()

        limited = self._rate_limited(
            f"login:{client.ip_address}", self.login_limit, "Too many login attempts. Please try again later."
        )
        if limited is not None:
            await self.audit.log_login(False, client, reason="rate_limited", details={"email": email})
            await self.audit.log(events.RATE_LIMITED, success=False, client=client, details={"action": "login"})
            return limited

        user = await run_in_threadpool(self.credentials.get_by_email, email)
        if user is not None:
            remaining = self.lockout.seconds_remaining(user)
            if remaining:
                await self.audit.log_login(False, client, user_id=user.id, reason="account_locked")
                return Err(
                    ErrorKind.ACCOUNT_LOCKED,
                    "Account is temporarily locked due to too many failed login attempts.",
                    retry_after=remaining,
                )

        # Always pay for one bcrypt check so unknown emails cost the same time.
        valid = await self._verify(
            password, user.password_hash if user is not None else dummy_hash(self.settings.bcrypt_rounds)
        )

        if user is None:
            await self.audit.log_login(False, client, reason="unknown_email", details={"email": email})
            return Err(ErrorKind.AUTHENTICATION, GENERIC_LOGIN_FAILURE)

        if not valid:
            state = await run_in_threadpool(self.lockout.register_failure, user.id)
            await self.audit.log_login(
                False,
                client,
                user_id=user.id,
                reason="invalid_password",
                details={"failed_attempts": state.failed_attempts},
            )
            if state.locked:
                await self.audit.log(
                    events.ACCOUNT_LOCKED,
                    success=False,
                    client=client,
                    user_id=user.id,
                    details={"failed_attempts": state.failed_attempts, "locked_until": to_iso(state.locked_until)},
                )
                return Err(
                    ErrorKind.ACCOUNT_LOCKED,
                    "Account is temporarily locked due to too many failed login attempts.",
                    retry_after=int(self.lockout.duration.total_seconds()),
                )
            return Err(ErrorKind.AUTHENTICATION, GENERIC_LOGIN_FAILURE)

        if not user.is_active:
            await self.audit.log_login(False, client, user_id=user.id, reason="account_inactive")
            return Err(ErrorKind.AUTHENTICATION, GENERIC_LOGIN_FAILURE)

        if user.mfa_enabled:
            if not mfa_code:
                return Ok(LoginOutcome(user=user, mfa_required=True))
            limited = self._rate_limited(
                f"mfa:{user.id}", self.mfa_limit, "Too many verification attempts. Please try again later."
            )
            if limited is not None:
                await self.audit.log(events.RATE_LIMITED, success=False, client=client, user_id=user.id,
                                     details={"action": "mfa"})
                return limited
            if not mfa.verify_code(user.mfa_secret, mfa_code):
                await self.audit.log(events.MFA_FAILURE, success=False, client=client, user_id=user.id)
                return Err(ErrorKind.AUTHENTICATION, "Invalid verification code.")

        await run_in_threadpool(self.lockout.reset, user.id)
        session = await run_in_threadpool(self.sessions.create, user.id, client)
        pair = self.tokens.issue(user, session, remember_me=remember_me)
        now = self._clock()
        await run_in_threadpool(self.credentials.record_login, user.id, now)
        age = self.policy.check_age(user.password_changed_at, now)
        await self.audit.log_login(
            True,
            client,
            user_id=user.id,
            session_id=session.id,
            details={"remember_me": remember_me, "mfa": user.mfa_enabled},
        )
        return Ok(
            LoginOutcome(
                user=user,
                tokens=pair,
                session=session,
                mfa_verified=user.mfa_enabled,
                password_change_required=age.must_change,
            )
        )

    async def logout(
        self,
        client: ClientContext,
        access_token: str | None = None,
        refresh_token: str | None = None,
    ) -> Result[bool]:
        """Revoke whatever tokens were presented and end their session.

        Ok(False) when nothing identifiable was presented -- logout is never
        an error for the caller.
        """
        claims = None
        for token in (access_token, refresh_token):
            if not token:
                continue
            peeked = self.tokens.peek(token)
            if peeked is None:
                continue
            claims = claims or peeked
            self.tokens.revoke(token, reason="logout")
        if claims is None:
            return Ok(False)
        await run_in_threadpool(self.sessions.invalidate, claims.session_id, "logout")
        await self.audit.log(events.LOGOUT, client=client, user_id=claims.user_id, session_id=claims.session_id)
        return Ok(True)

    async def logout_everywhere(
        self, auth: AuthContext, client: ClientContext, refresh_token: str | None = None
    ) -> Result[int]:
        self.tokens.revoke(auth.access_token, reason="logout")
        if refresh_token:
            self.tokens.revoke(refresh_token, reason="logout")
        ended = await run_in_threadpool(self.sessions.invalidate_all, auth.user.id, "logout_all")
        await self.audit.log(
            events.LOGOUT_ALL,
            client=client,
            user_id=auth.user.id,
            session_id=auth.session.id,
            details={"sessions_ended": ended},
        )
        return Ok(ended)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def authenticate(self, access_token: str) -> Result[AuthContext]:
        """Resolve an access token to a live user + session."""
        verified = self.tokens.verify(access_token, expected_type="access")
        if isinstance(verified, Err):
            return verified
        claims = verified.value
        session = await run_in_threadpool(self.sessions.validate, claims.session_id)
        if session is None or session.user_id != claims.user_id:
            return Err(ErrorKind.AUTHENTICATION, "Session has expired. Please log in again.")
        user = await run_in_threadpool(self.credentials.get_by_id, claims.user_id)
        if user is None or not user.is_active:
            return Err(ErrorKind.AUTHENTICATION, "Authentication required.")
        return Ok(AuthContext(user=user, session=session, claims=claims, access_token=access_token))

    async def refresh(self, refresh_token: str, client: ClientContext) -> Result[RefreshOutcome]:
        """Rotate a refresh token: revoke it and issue a fresh pair for the same session.

        Presenting a refresh token that was already rotated out means two
        parties hold it. The whole session is ended and the event is
        recorded as critical.
        """
        verified = self.tokens.verify(refresh_token, expected_type="refresh")
        if isinstance(verified, Err):
            if verified.kind is ErrorKind.TOKEN_REVOKED:
                await self._handle_refresh_reuse(refresh_token, client)
            return verified
        claims = verified.value

        session = await run_in_threadpool(self.sessions.validate, claims.session_id)
        if session is None:
            self.tokens.revoke(refresh_token, reason="session_ended")
            await self.audit.log(
                events.SESSION_EXPIRED,
                success=False,
                client=client,
                user_id=claims.user_id,
                session_id=claims.session_id,
            )
            return Err(ErrorKind.AUTHENTICATION, "Session has expired. Please log in again.")

        user = await run_in_threadpool(self.credentials.get_by_id, claims.user_id)
        if user is None or not user.is_active:
            return Err(ErrorKind.AUTHENTICATION, "Session is no longer valid.")
        remaining = self.lockout.seconds_remaining(user)
        if remaining:
            return Err(ErrorKind.ACCOUNT_LOCKED, "Account is temporarily locked.", retry_after=remaining)

        if device_fingerprint(client.user_agent, client.ip_address) != claims.device_fingerprint:
            await self.audit.log(
                events.DEVICE_MISMATCH,
                success=False,
                client=client,
                user_id=user.id,
                session_id=session.id,
            )
            return Err(ErrorKind.AUTHENTICATION, "Token was issued to a different device.")

        self.tokens.revoke(refresh_token, reason="rotated")
        pair = self.tokens.issue(user, session)
        await self.audit.log(events.TOKEN_REFRESHED, client=client, user_id=user.id, session_id=session.id)
        return Ok(RefreshOutcome(user=user, tokens=pair))

    async def _handle_refresh_reuse(self, refresh_token: str, client: ClientContext) -> None:
        claims = self.tokens.peek(refresh_token)
        if claims is None or self.tokens.revocation_reason(claims.jti) != "rotated":
            return
        await run_in_threadpool(self.sessions.invalidate, claims.session_id, "token_reuse")
        await self.audit.log(
            events.TOKEN_REUSE,
            success=False,
            client=client,
            user_id=claims.user_id,
            session_id=claims.session_id,
            details={"jti": claims.jti},
        )

    # ------------------------------------------------------------------
    # Registration and accounts
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        client: ClientContext,
        invite_code: str | None = None,
    ) -> Result[User]:
        email = email.strip().lower()
        limited = self._rate_limited(
            f"register:{client.ip_address}",
            self.register_limit,
            "Too many registration attempts. Please try again later.",
        )
        if limited is not None:
            await self.audit.log(events.RATE_LIMITED, success=False, client=client, details={"action": "register"})
            return limited

        invitation = None
        if invite_code:
            invitation = await run_in_threadpool(self.credentials.get_invitation, invite_code)
            if (
                invitation is None
                or invitation.used_at is not None
                or (invitation.email is not None and invitation.email != email)
            ):
                return Err(ErrorKind.VALIDATION, "Invitation code is invalid or has already been used.")

        return await self.create_account(
            email, password, name, client, role=invitation.role if invitation else "student", invitation=invitation
        )

    async def create_account(
        self,
        email: str,
        password: str,
        name: str,
        client: ClientContext,
        role: str = "student",
        invitation: Invitation | None = None,
    ) -> Result[User]:
        """Policy check, uniqueness check, insert. Shared by register() and the operator CLI."""
        email = email.strip().lower()
        report = await run_in_threadpool(self.policy.validate, password, {"name": name, "email": email})
        if not report.is_valid:
            return Err(
                ErrorKind.VALIDATION,
                "Password does not meet the security requirements.",
                feedback=_feedback(report),
            )

        # Registration deliberately says "exists" -- see DESIGN.md.
        if await run_in_threadpool(self.credentials.email_exists, email):
            await self.audit.log(events.REGISTER_EMAIL_EXISTS, success=False, client=client, details={"email": email})
            return Err(ErrorKind.CONFLICT, "An account with this email already exists.")

        password_hash = await self._hash(password)
        now = self._clock()
        try:
            user_id = await run_in_threadpool(
                self.credentials.create_user,
                User(email=email, name=name, password_hash=password_hash, role=role),
                now,
            )
        except IntegrityError:
            # Lost a race with a concurrent registration for the same email.
            return Err(ErrorKind.CONFLICT, "An account with this email already exists.")
        await run_in_threadpool(
            self.credentials.add_password_history, user_id, password_hash, now, self.policy.history_limit
        )
        if invitation is not None and not await run_in_threadpool(
            self.credentials.consume_invitation, invitation.code, user_id, now
        ):
            logger.warning("Invitation %s was redeemed concurrently by another account", invitation.id)

        user = await run_in_threadpool(self.credentials.get_by_id, user_id)
        await self._queue_verification_email(user)
        await self.audit.log(
            events.USER_CREATED,
            client=client,
            user_id=user_id,
            details={"role": role, "invited": invitation is not None},
        )
        return Ok(user)

    def get_profile(self, user_id: int) -> Result[User]:
        user = self.credentials.get_by_id(user_id)
        if user is None:
            return Err(ErrorKind.NOT_FOUND, "User not found.")
        return Ok(user)

    async def update_profile(self, auth: AuthContext, name: str) -> Result[User]:
        name = name.strip()
        if not name:
            return Err(ErrorKind.VALIDATION, "Name must not be empty.")
        await run_in_threadpool(self.credentials.update_profile, auth.user.id, name, self._clock())
        return await run_in_threadpool(self.get_profile, auth.user.id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    async def change_password(
        self, auth: AuthContext, current_password: str, new_password: str, client: ClientContext
    ) -> Result[int]:
        """Change the password and end every other session. Ok(number of sessions ended)."""
        user = auth.user
        if not await self._verify(current_password, user.password_hash):
            await self.audit.log(
                events.PASSWORD_CHANGE,
                success=False,
                client=client,
                user_id=user.id,
                details={"reason": "invalid_current_password"},
            )
            return Err(ErrorKind.AUTHENTICATION, "Current password is incorrect.")

        rejected = await self._check_new_password(user, new_password)
        if rejected is not None:
            return rejected

        await self._store_new_password(user, new_password)
        ended = await run_in_threadpool(
            self.sessions.invalidate_all, user.id, "password_change", except_session_id=auth.session.id
        )
        await self.audit.log(
            events.PASSWORD_CHANGE,
            client=client,
            user_id=user.id,
            session_id=auth.session.id,
            details={"other_sessions_ended": ended},
        )
        return Ok(ended)

    async def request_password_reset(self, email: str, client: ClientContext) -> Result[str]:
        """Start a reset. Ok(generic message) whether or not the account exists."""
        email = email.strip().lower()
        limited = self._rate_limited(
            f"password_reset:{email}", self.reset_limit, "Too many reset requests. Please try again later."
        )
        if limited is not None:
            await self.audit.log(
                events.RATE_LIMITED, success=False, client=client, details={"action": "password_reset"}
            )
            return limited

        user = await run_in_threadpool(self.credentials.get_by_email, email)
        if user is None or not user.is_active:
            return Ok(RESET_REQUESTED_MESSAGE)

        raw = await self._issue_one_time_token(user, PASSWORD_RESET, _RESET_TOKEN_TTL)
        link = f"{self.settings.app_base_url}/reset-password?token={raw}"
        body = (
            f"Hello {user.name},\n\n"
            "A password reset was requested for your account. The link below is valid for one hour:\n\n"
            f"{link}\n\n"
            "If you did not request this, you can ignore this email."
        )
        await self.audit.log(events.PASSWORD_RESET_REQUESTED, client=client, user_id=user.id)
        self._spawn(self._deliver(user, "Reset your password", body, client, events.PASSWORD_RESET_EMAIL_FAILED))
        return Ok(RESET_REQUESTED_MESSAGE)

    async def reset_password(self, token: str, new_password: str, client: ClientContext) -> Result[None]:
        record = await self._redeem_one_time_token(token, PASSWORD_RESET)
        user = await run_in_threadpool(self.credentials.get_by_id, record.user_id) if record is not None else None
        if record is None or user is None or not user.is_active:
            return Err(ErrorKind.VALIDATION, "Reset token is invalid or has expired.")

        rejected = await self._check_new_password(user, new_password)
        if rejected is not None:
            return rejected
        if not await run_in_threadpool(self.credentials.consume_one_time_token, record.id, self._clock()):
            return Err(ErrorKind.VALIDATION, "Reset token is invalid or has expired.")

        await self._store_new_password(user, new_password)
        await run_in_threadpool(self.lockout.reset, user.id)
        ended = await run_in_threadpool(self.sessions.invalidate_all, user.id, "password_reset")
        await self.audit.log(
            events.PASSWORD_RESET, client=client, user_id=user.id, details={"sessions_ended": ended}
        )
        return Ok(None)

    def check_password_strength(self, password: str, name: str = "", email: str = "") -> PasswordValidationResult:
        return self.policy.validate(password, {"name": name, "email": email})

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def _queue_verification_email(self, user: User) -> None:
        raw = await self._issue_one_time_token(user, EMAIL_VERIFICATION, _VERIFY_TOKEN_TTL)
        link = f"{self.settings.app_base_url}/verify-email?token={raw}"
        body = f"Hello {user.name},\n\nPlease confirm your email address:\n\n{link}\n"
        self._spawn(self._deliver(user, "Confirm your email address", body, ClientContext(), None))

    async def send_verification_email(self, auth: AuthContext) -> Result[None]:
        if auth.user.email_verified:
            return Err(ErrorKind.CONFLICT, "Email address is already verified.")
        await self._queue_verification_email(auth.user)
        return Ok(None)

    async def verify_email(self, token: str, client: ClientContext) -> Result[None]:
        record = await self._redeem_one_time_token(token, EMAIL_VERIFICATION)
        if record is None or not await run_in_threadpool(
            self.credentials.consume_one_time_token, record.id, self._clock()
        ):
            return Err(ErrorKind.VALIDATION, "Verification token is invalid or has expired.")
        await run_in_threadpool(self.credentials.set_email_verified, record.user_id, self._clock())
        await self.audit.log(events.EMAIL_VERIFIED, client=client, user_id=record.user_id)
        return Ok(None)

    async def _deliver(
        self, user: User, subject: str, body: str, client: ClientContext, failure_event: str | None
    ) -> None:
        sent = await self.mailer.send(user.email, subject, body)
        if not sent and failure_event is not None:
            await self.audit.log(failure_event, success=False, client=client, user_id=user.id)

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    async def setup_mfa(self, auth: AuthContext) -> Result[MfaSetup]:
        if auth.user.mfa_enabled:
            return Err(ErrorKind.CONFLICT, "Two-factor authentication is already enabled.")
        secret = mfa.generate_secret()
        await run_in_threadpool(self.credentials.set_mfa, auth.user.id, False, secret, self._clock())
        return Ok(
            MfaSetup(
                secret=secret,
                provisioning_uri=mfa.provisioning_uri(secret, auth.user.email, self.settings.mfa_issuer),
            )
        )

    async def activate_mfa(self, auth: AuthContext, code: str, client: ClientContext) -> Result[None]:
        user = await run_in_threadpool(self.credentials.get_by_id, auth.user.id)
        if user.mfa_enabled:
            return Err(ErrorKind.CONFLICT, "Two-factor authentication is already enabled.")
        if not user.mfa_secret:
            return Err(ErrorKind.VALIDATION, "Start two-factor setup first.")
        limited = self._rate_limited(
            f"mfa:{user.id}", self.mfa_limit, "Too many verification attempts. Please try again later."
        )
        if limited is not None:
            return limited
        if not mfa.verify_code(user.mfa_secret, code):
            await self.audit.log(events.MFA_FAILURE, success=False, client=client, user_id=user.id)
            return Err(ErrorKind.VALIDATION, "Invalid verification code.")
        await run_in_threadpool(self.credentials.set_mfa, user.id, True, user.mfa_secret, self._clock())
        await self.audit.log(events.MFA_ENABLED, client=client, user_id=user.id, session_id=auth.session.id)
        return Ok(None)

    async def disable_mfa(
        self, auth: AuthContext, password: str, code: str, client: ClientContext
    ) -> Result[None]:
        user = await run_in_threadpool(self.credentials.get_by_id, auth.user.id)
        if not user.mfa_enabled:
            return Err(ErrorKind.VALIDATION, "Two-factor authentication is not enabled.")
        if not await self._verify(password, user.password_hash):
            return Err(ErrorKind.AUTHENTICATION, "Password is incorrect.")
        if not mfa.verify_code(user.mfa_secret, code):
            await self.audit.log(events.MFA_FAILURE, success=False, client=client, user_id=user.id)
            return Err(ErrorKind.AUTHENTICATION, "Invalid verification code.")
        await run_in_threadpool(self.credentials.set_mfa, user.id, False, None, self._clock())
        await self.audit.log(events.MFA_DISABLED, client=client, user_id=user.id, session_id=auth.session.id)
        return Ok(None)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_sessions(self, auth: AuthContext) -> list[Session]:
        return self.sessions.list_active(auth.user.id)

    async def end_session(self, auth: AuthContext, session_id: str, client: ClientContext) -> Result[None]:
        owned = {s.id for s in await run_in_threadpool(self.sessions.list_active, auth.user.id)}
        if session_id not in owned:
            return Err(ErrorKind.NOT_FOUND, "Session not found.")
        await run_in_threadpool(self.sessions.invalidate, session_id, "ended_by_user")
        await self.audit.log(events.LOGOUT, client=client, user_id=auth.user.id, session_id=session_id)
        return Ok(None)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def unlock_account(self, user_id: int, admin: AuthContext, client: ClientContext) -> Result[User]:
        if await run_in_threadpool(self.credentials.get_by_id, user_id) is None:
            return Err(ErrorKind.NOT_FOUND, "User not found.")
        await run_in_threadpool(self.lockout.unlock, user_id)
        await self.audit.log(
            events.ACCOUNT_UNLOCKED, client=client, user_id=user_id, details={"unlocked_by": admin.user.id}
        )
        return await run_in_threadpool(self.get_profile, user_id)

    async def revoke_user_sessions(self, user_id: int, admin: AuthContext, client: ClientContext) -> Result[int]:
        if await run_in_threadpool(self.credentials.get_by_id, user_id) is None:
            return Err(ErrorKind.NOT_FOUND, "User not found.")
        ended = await run_in_threadpool(self.sessions.invalidate_all, user_id, "revoked_by_admin")
        await self.audit.log(
            events.LOGOUT_ALL,
            client=client,
            user_id=user_id,
            risk_level=RiskLevel.medium,
            details={"revoked_by": admin.user.id, "sessions_ended": ended},
        )
        return Ok(ended)

    def create_invitation(self, admin: AuthContext, role: str, email: str | None = None) -> Result[Invitation]:
        if role not in ROLES:
            return Err(ErrorKind.VALIDATION, f"Role must be one of: {', '.join(ROLES)}.")
        invitation = Invitation(
            code=secrets.token_urlsafe(16),
            role=role,
            email=email.strip().lower() if email else None,
            created_by=admin.user.id,
            created_at=self._clock(),
        )
        invitation.id = self.credentials.create_invitation(invitation)
        return Ok(invitation)

    async def search_audit(self, query: AuditQuery) -> AuditPage:
        # Buffered events would otherwise be invisible until the next flush tick.
        await self.audit.flush()
        return await run_in_threadpool(self.audit.search, query)

    async def security_metrics(self, period: str = "day") -> Result[tuple[datetime, SecurityMetrics]]:
        days = METRIC_PERIODS.get(period)
        if days is None:
            return Err(ErrorKind.VALIDATION, f"Period must be one of: {', '.join(METRIC_PERIODS)}.")
        await self.audit.flush()
        since = self._clock() - timedelta(days=days)
        return Ok((since, await run_in_threadpool(self.audit.metrics, since)))

    async def cleanup_sessions(self, admin: AuthContext, client: ClientContext) -> Result[int]:
        removed = await run_in_threadpool(self.sessions.cleanup_expired)
        await self.audit.log(
            events.SESSION_EXPIRED, client=client, user_id=admin.user.id, details={"sessions_removed": removed}
        )
        return Ok(removed)

    async def run_maintenance(self) -> dict[str, int]:
        """Prune in-memory state and expire persisted records. Run periodically."""
        report = {
            "rate_limit_keys": self.rate_limiter.prune(),
            "blacklisted_tokens": self.tokens.prune_blacklist(),
            "sessions": await run_in_threadpool(self.sessions.cleanup_expired),
            "audit_events": await self.audit.cleanup(),
        }
        logger.info("Maintenance: %s", report)
        return report

    async def close(self) -> None:
        await self.wait_for_background()
        await self.audit.flush()
        if self._engine is not None:
            self._engine.dispose()


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_auth_service(
    settings: Settings,
    engine: Engine | None = None,
    mailer: EmailSender | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> AuthService:
    """Wire every component with one shared engine and one clock."""
    engine = engine or create_db_engine(settings.database_url)
    credentials = CredentialStore(engine)
    return AuthService(
        settings=settings,
        credentials=credentials,
        sessions=SessionManager.from_settings(SessionStore(engine), settings, clock=clock),
        tokens=TokenService.from_settings(settings, clock=clock),
        rate_limiter=FixedWindowRateLimiter(clock=clock),
        lockout=LockoutController(
            credentials, threshold=settings.lockout_threshold, lockout_minutes=settings.lockout_minutes, clock=clock
        ),
        policy=PasswordPolicy.from_settings(settings),
        audit=AuditLogger(
            AuditStore(engine),
            batch_size=settings.audit_batch_size,
            retention_days=settings.audit_retention_days,
            clock=clock,
        ),
        mailer=mailer or EmailSender.from_settings(settings),
        clock=clock,
        engine=engine,
    )
