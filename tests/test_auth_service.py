"""
tests/test_auth_service.py -- AuthService flows end to end, below the HTTP layer.

Each test gets a fresh service on its own in-memory database (conftest
`service` fixture) and a FakeClock, so lockouts, idle timeouts and token
expiry are exercised by moving time rather than sleeping.

TOTP codes are generated with pyotp against the real wall clock -- the same
clock pyotp uses when verifying them.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pyotp
import pytest

from auth import audit as events
from auth.errors import GENERIC_LOGIN_FAILURE, Err, ErrorKind, Ok
from auth.models import AuditQuery, AuthContext, RiskLevel
from auth.service import RESET_REQUESTED_MESSAGE, AuthService
from helpers import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    CLIENT,
    OTHER_CLIENT,
    OTHER_PASSWORD,
    STRONG_PASSWORD,
    THIRD_PASSWORD,
    FakeClock,
    RecordingEmailSender,
    build_test_service,
    register_user,
    run,
)

ADA = "ada@example.com"


def _login(service: AuthService, email: str = ADA, password: str = STRONG_PASSWORD, client=CLIENT):
    result = run(service, service.login(email, password, client))
    assert isinstance(result, Ok), f"login failed: {result}"
    return result.value


def _auth(service: AuthService, email: str = ADA, password: str = STRONG_PASSWORD, client=CLIENT) -> AuthContext:
    outcome = _login(service, email, password, client)
    result = run(service, service.authenticate(outcome.tokens.access_token))
    assert isinstance(result, Ok), f"authenticate failed: {result}"
    return result.value


def _admin(service: AuthService, client=OTHER_CLIENT) -> AuthContext:
    register_user(service, email=ADMIN_EMAIL, password=ADMIN_PASSWORD, name="Root Operator", role="admin")
    return _auth(service, ADMIN_EMAIL, ADMIN_PASSWORD, client)


def _audit_count(service: AuthService, **filters) -> int:
    return run(service, service.search_audit(AuditQuery(**filters))).total


def _wrong_code(secret: str) -> str:
    return f"{(int(pyotp.TOTP(secret).now()) + 500000) % 1000000:06d}"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_successful_login(self, service, clock) -> None:
        user = register_user(service)
        outcome = _login(service, email="  ADA@Example.com ")
        assert outcome.user.id == user.id
        assert outcome.tokens is not None and outcome.session is not None
        assert not outcome.mfa_required
        assert not outcome.password_change_required
        assert service.credentials.get_by_id(user.id).last_login_at == clock.now
        assert _audit_count(service, event_type=events.LOGIN_SUCCESS) == 1

    def test_unknown_email_and_wrong_password_look_identical(self, service) -> None:
        register_user(service)
        unknown = run(service, service.login("nobody@example.com", STRONG_PASSWORD, CLIENT))
        wrong = run(service, service.login(ADA, "Wrong-Guess-11", CLIENT))
        assert isinstance(unknown, Err) and isinstance(wrong, Err)
        assert unknown.kind is wrong.kind is ErrorKind.AUTHENTICATION
        assert unknown.message == wrong.message == GENERIC_LOGIN_FAILURE

    def test_inactive_account_gets_generic_failure(self, service, clock) -> None:
        user = register_user(service)
        service.credentials.set_status(user.id, "suspended", clock())
        result = run(service, service.login(ADA, STRONG_PASSWORD, CLIENT))
        assert result.kind is ErrorKind.AUTHENTICATION
        assert result.message == GENERIC_LOGIN_FAILURE

    def test_old_password_flags_change_required(self, service, clock) -> None:
        register_user(service)
        clock.advance(days=91)
        assert _login(service).password_change_required

    def test_remember_me_lengthens_access_token(self, service) -> None:
        register_user(service)
        result = run(service, service.login(ADA, STRONG_PASSWORD, CLIENT, remember_me=True))
        assert result.value.tokens.access_expires_in == 7 * 86400


class TestLockout:
    @pytest.fixture
    def lax_service(self, clock):
        """Login rate limit out of the way so only the lockout is measured."""
        svc = build_test_service(clock=clock, login_rate_max=100)
        yield svc
        asyncio.run(svc.close())

    def test_fifth_failure_locks_account(self, lax_service, clock) -> None:
        service = lax_service
        register_user(service)
        kinds = [run(service, service.login(ADA, "Wrong-Guess-11", CLIENT)).kind for _ in range(5)]
        assert kinds == [ErrorKind.AUTHENTICATION] * 4 + [ErrorKind.ACCOUNT_LOCKED]

        locked = run(service, service.login(ADA, STRONG_PASSWORD, CLIENT))
        assert locked.kind is ErrorKind.ACCOUNT_LOCKED, "The right password must not open a locked account"
        assert locked.retry_after == 900

        clock.advance(minutes=15)
        outcome = _login(service)
        assert service.credentials.get_by_id(outcome.user.id).failed_login_attempts == 0
        assert _audit_count(service, event_type=events.ACCOUNT_LOCKED) == 1

    def test_success_resets_counter(self, lax_service) -> None:
        service = lax_service
        user = register_user(service)
        for _ in range(3):
            run(service, service.login(ADA, "Wrong-Guess-11", CLIENT))
        _login(service)
        assert service.credentials.get_by_id(user.id).failed_login_attempts == 0


class TestLoginRateLimit:
    def test_sixth_attempt_from_same_ip_is_refused(self, service) -> None:
        for i in range(5):
            result = run(service, service.login(f"ghost{i}@example.com", STRONG_PASSWORD, CLIENT))
            assert result.kind is ErrorKind.AUTHENTICATION
        limited = run(service, service.login("ghost@example.com", STRONG_PASSWORD, CLIENT))
        assert limited.kind is ErrorKind.RATE_LIMITED
        assert limited.retry_after == 900
        assert _audit_count(service, event_type=events.RATE_LIMITED) == 1
        assert _audit_count(service, event_type=events.LOGIN_FAILURE, risk_level=RiskLevel.high) == 1

        other = run(service, service.login("ghost@example.com", STRONG_PASSWORD, OTHER_CLIENT))
        assert other.kind is ErrorKind.AUTHENTICATION, "Limits are per client address"


class TestEventLoopIsolation:
    def test_store_calls_run_off_the_loop_thread(self, service, monkeypatch) -> None:
        register_user(service)
        db_threads: list[int] = []

        def spying(method):
            def wrapper(*args, **kwargs):
                db_threads.append(threading.get_ident())
                return method(*args, **kwargs)

            return wrapper

        monkeypatch.setattr(service.credentials, "get_by_email", spying(service.credentials.get_by_email))
        monkeypatch.setattr(service.sessions, "create", spying(service.sessions.create))
        monkeypatch.setattr(service.sessions, "validate", spying(service.sessions.validate))

        async def login_and_authenticate() -> tuple[int, object]:
            outcome = await service.login(ADA, STRONG_PASSWORD, CLIENT)
            auth = await service.authenticate(outcome.value.tokens.access_token)
            return threading.get_ident(), auth

        loop_thread, auth = run(service, login_and_authenticate())
        assert isinstance(auth, Ok)
        assert len(db_threads) == 3
        assert loop_thread not in db_threads


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class TestMfa:
    def test_full_mfa_lifecycle(self, service) -> None:
        user = register_user(service)
        auth = _auth(service)

        setup = run(service, service.setup_mfa(auth)).value
        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert not service.credentials.get_by_id(user.id).mfa_enabled, "Setup alone must not enable MFA"

        bad = run(service, service.activate_mfa(auth, _wrong_code(setup.secret), CLIENT))
        assert bad.kind is ErrorKind.VALIDATION
        assert isinstance(run(service, service.activate_mfa(auth, pyotp.TOTP(setup.secret).now(), CLIENT)), Ok)
        assert service.credentials.get_by_id(user.id).mfa_enabled

        pending = run(service, service.login(ADA, STRONG_PASSWORD, CLIENT)).value
        assert pending.mfa_required
        assert pending.tokens is None

        wrong = run(service, service.login(ADA, STRONG_PASSWORD, CLIENT, mfa_code=_wrong_code(setup.secret)))
        assert wrong.kind is ErrorKind.AUTHENTICATION
        assert service.credentials.get_by_id(user.id).failed_login_attempts == 0

        ok = run(service, service.login(ADA, STRONG_PASSWORD, CLIENT, mfa_code=pyotp.TOTP(setup.secret).now()))
        assert ok.value.mfa_verified
        assert ok.value.tokens is not None

    def test_setup_twice_conflicts_once_enabled(self, service) -> None:
        register_user(service)
        auth = _auth(service)
        secret = run(service, service.setup_mfa(auth)).value.secret
        run(service, service.activate_mfa(auth, pyotp.TOTP(secret).now(), CLIENT))
        # authenticate() reloads the user, so the context now sees MFA enabled.
        refreshed = run(service, service.authenticate(auth.access_token)).value
        assert run(service, service.setup_mfa(refreshed)).kind is ErrorKind.CONFLICT

    def test_disable_needs_password_and_code(self, service) -> None:
        user = register_user(service)
        auth = _auth(service)
        secret = run(service, service.setup_mfa(auth)).value.secret
        run(service, service.activate_mfa(auth, pyotp.TOTP(secret).now(), CLIENT))

        no_pw = run(service, service.disable_mfa(auth, "Wrong-Guess-11", pyotp.TOTP(secret).now(), CLIENT))
        assert no_pw.kind is ErrorKind.AUTHENTICATION
        no_code = run(service, service.disable_mfa(auth, STRONG_PASSWORD, _wrong_code(secret), CLIENT))
        assert no_code.kind is ErrorKind.AUTHENTICATION
        assert isinstance(run(service, service.disable_mfa(auth, STRONG_PASSWORD, pyotp.TOTP(secret).now(), CLIENT)), Ok)

        stored = service.credentials.get_by_id(user.id)
        assert not stored.mfa_enabled
        assert stored.mfa_secret is None

    def test_activate_without_setup(self, service) -> None:
        register_user(service)
        auth = _auth(service)
        assert run(service, service.activate_mfa(auth, "123456", CLIENT)).kind is ErrorKind.VALIDATION


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_creates_student_and_sends_verification(self, service, mailer) -> None:
        result = run(service, service.register(ADA, STRONG_PASSWORD, "Ada Lovelace", CLIENT))
        user = result.value
        assert user.role == "student"
        assert not user.email_verified
        assert [(to, subject) for to, subject, _body in mailer.sent] == [(ADA, "Confirm your email address")]
        assert len(service.credentials.get_password_history(user.id)) == 1

    def test_duplicate_email_conflicts_and_is_audited(self, service) -> None:
        register_user(service)
        result = run(service, service.register("Ada@Example.com", OTHER_PASSWORD, "Someone Else", CLIENT))
        assert result.kind is ErrorKind.CONFLICT
        assert _audit_count(service, event_type=events.REGISTER_EMAIL_EXISTS, risk_level=RiskLevel.high) == 1

    def test_weak_password_returns_feedback(self, service) -> None:
        result = run(service, service.register(ADA, "password", "Ada Lovelace", CLIENT))
        assert result.kind is ErrorKind.VALIDATION
        assert result.feedback, "Policy errors must be returned to the caller"
        assert service.credentials.get_by_email(ADA) is None

    def test_registration_rate_limit(self, service) -> None:
        for i in range(3):
            run(service, service.register(f"user{i}@example.com", STRONG_PASSWORD, "Learner", CLIENT))
        limited = run(service, service.register("user9@example.com", STRONG_PASSWORD, "Learner", CLIENT))
        assert limited.kind is ErrorKind.RATE_LIMITED
        assert limited.retry_after == 3600

    def test_invitation_grants_role_once(self, service) -> None:
        admin = _admin(service)
        invitation = service.create_invitation(admin, "instructor", email="Grace@Example.com").value

        wrong_email = run(
            service, service.register("alan@example.com", STRONG_PASSWORD, "Alan Turing", CLIENT, invitation.code)
        )
        assert wrong_email.kind is ErrorKind.VALIDATION

        grace = run(
            service, service.register("grace@example.com", STRONG_PASSWORD, "Grace Hopper", CLIENT, invitation.code)
        )
        assert grace.value.role == "instructor"
        assert service.credentials.get_invitation(invitation.code).used_by == grace.value.id

        reused = run(
            service, service.register("grace@example.com", OTHER_PASSWORD, "Grace Hopper", CLIENT, invitation.code)
        )
        assert reused.kind is ErrorKind.VALIDATION

    def test_invitation_role_must_exist(self, service) -> None:
        admin = _admin(service)
        assert service.create_invitation(admin, "superuser").kind is ErrorKind.VALIDATION


# ---------------------------------------------------------------------------
# Tokens and sessions
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation_and_reuse_detection(self, service) -> None:
        register_user(service)
        first = _login(service).tokens
        rotated = run(service, service.refresh(first.refresh_token, CLIENT))
        assert isinstance(rotated, Ok)
        second = rotated.value.tokens
        assert second.refresh_token != first.refresh_token

        replay = run(service, service.refresh(first.refresh_token, CLIENT))
        assert replay.kind is ErrorKind.TOKEN_REVOKED
        assert _audit_count(service, event_type=events.TOKEN_REUSE, risk_level=RiskLevel.critical) == 1

        # The whole session is gone, so the legitimate holder is logged out too.
        assert run(service, service.authenticate(second.access_token)).kind is ErrorKind.AUTHENTICATION
        assert run(service, service.refresh(second.refresh_token, CLIENT)).kind is ErrorKind.AUTHENTICATION

    def test_device_mismatch(self, service) -> None:
        register_user(service)
        tokens = _login(service).tokens
        stolen = run(service, service.refresh(tokens.refresh_token, OTHER_CLIENT))
        assert stolen.kind is ErrorKind.AUTHENTICATION
        assert _audit_count(service, event_type=events.DEVICE_MISMATCH) == 1
        assert isinstance(run(service, service.refresh(tokens.refresh_token, CLIENT)), Ok)

    def test_logged_out_token_is_not_reuse(self, service) -> None:
        register_user(service)
        tokens = _login(service).tokens
        run(service, service.logout(CLIENT, tokens.access_token, tokens.refresh_token))
        assert run(service, service.refresh(tokens.refresh_token, CLIENT)).kind is ErrorKind.TOKEN_REVOKED
        assert _audit_count(service, event_type=events.TOKEN_REUSE) == 0

    def test_logout_with_rotated_token_keeps_reuse_detection(self, service) -> None:
        register_user(service)
        first = _login(service).tokens
        second = run(service, service.refresh(first.refresh_token, CLIENT)).value.tokens
        run(service, service.logout(CLIENT, second.access_token, first.refresh_token))

        replay = run(service, service.refresh(first.refresh_token, CLIENT))
        assert replay.kind is ErrorKind.TOKEN_REVOKED
        assert _audit_count(service, event_type=events.TOKEN_REUSE) == 1

    def test_access_token_cannot_refresh(self, service) -> None:
        register_user(service)
        tokens = _login(service).tokens
        result = run(service, service.refresh(tokens.access_token, CLIENT))
        assert result.kind is ErrorKind.TOKEN_INVALID_SIGNATURE

    def test_idle_session_cannot_refresh(self, service, clock) -> None:
        register_user(service)
        tokens = _login(service).tokens
        clock.advance(minutes=31)
        assert run(service, service.refresh(tokens.refresh_token, CLIENT)).kind is ErrorKind.AUTHENTICATION
        assert _audit_count(service, event_type=events.SESSION_EXPIRED) == 1

    def test_expired_access_token(self, service, clock) -> None:
        register_user(service)
        tokens = _login(service).tokens
        clock.advance(minutes=15)
        assert run(service, service.authenticate(tokens.access_token)).kind is ErrorKind.TOKEN_EXPIRED


class TestLogout:
    def test_logout_revokes_tokens_and_session(self, service) -> None:
        register_user(service)
        outcome = _login(service)
        assert run(service, service.logout(CLIENT, access_token=outcome.tokens.access_token)).value is True
        assert run(service, service.authenticate(outcome.tokens.access_token)).kind is ErrorKind.TOKEN_REVOKED
        assert not service.sessions._store.get(outcome.session.id).is_active

    def test_logout_without_tokens(self, service) -> None:
        assert run(service, service.logout(CLIENT)).value is False
        assert run(service, service.logout(CLIENT, access_token="garbage")).value is False

    def test_logout_everywhere(self, service) -> None:
        register_user(service)
        first = _auth(service)
        others = [_login(service).tokens for _ in range(2)]
        assert run(service, service.logout_everywhere(first, CLIENT)).value == 3
        for tokens in others:
            assert isinstance(run(service, service.authenticate(tokens.access_token)), Err)
        assert run(service, service.authenticate(first.access_token)).kind is ErrorKind.TOKEN_REVOKED


class TestSessions:
    def test_list_and_end_sessions(self, service) -> None:
        register_user(service)
        auth = _auth(service)
        other = _login(service)
        assert {s.id for s in service.list_sessions(auth)} == {auth.session.id, other.session.id}

        assert isinstance(run(service, service.end_session(auth, other.session.id, CLIENT)), Ok)
        assert [s.id for s in service.list_sessions(auth)] == [auth.session.id]
        assert run(service, service.end_session(auth, "not-a-session", CLIENT)).kind is ErrorKind.NOT_FOUND

    def test_cannot_end_someone_elses_session(self, service) -> None:
        register_user(service)
        register_user(service, email="grace@example.com", name="Grace Hopper")
        ada = _auth(service)
        grace = _login(service, email="grace@example.com")
        result = run(service, service.end_session(ada, grace.session.id, CLIENT))
        assert result.kind is ErrorKind.NOT_FOUND

    def test_profile_update(self, service) -> None:
        register_user(service)
        auth = _auth(service)
        assert run(service, service.update_profile(auth, "  Countess Ada ")).value.name == "Countess Ada"
        assert run(service, service.update_profile(auth, "   ")).kind is ErrorKind.VALIDATION
        assert service.get_profile(99999).kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_change_ends_other_sessions(self, service) -> None:
        register_user(service)
        auth = _auth(service)
        other = _login(service)

        wrong = run(service, service.change_password(auth, "Wrong-Guess-11", OTHER_PASSWORD, CLIENT))
        assert wrong.kind is ErrorKind.AUTHENTICATION
        reuse = run(service, service.change_password(auth, STRONG_PASSWORD, STRONG_PASSWORD, CLIENT))
        assert reuse.kind is ErrorKind.VALIDATION
        assert any("last 5 passwords" in f for f in reuse.feedback)

        assert run(service, service.change_password(auth, STRONG_PASSWORD, OTHER_PASSWORD, CLIENT)).value == 1
        assert run(service, service.authenticate(other.tokens.access_token)).kind is ErrorKind.AUTHENTICATION
        assert isinstance(run(service, service.authenticate(auth.access_token)), Ok)

        assert run(service, service.login(ADA, STRONG_PASSWORD, CLIENT)).kind is ErrorKind.AUTHENTICATION
        _login(service, password=OTHER_PASSWORD)


class TestPasswordReset:
    def test_reset_flow(self, service, mailer) -> None:
        user = register_user(service)
        session = _login(service).session
        run(service, service.login(ADA, "Wrong-Guess-11", CLIENT))

        assert run(service, service.request_password_reset(ADA, CLIENT)).value == RESET_REQUESTED_MESSAGE
        to, subject, body = mailer.sent[-1]
        assert (to, subject) == (ADA, "Reset your password")
        assert "https://learn.test/reset-password?token=" in body
        token = mailer.last_token(ADA)

        assert isinstance(run(service, service.reset_password(token, OTHER_PASSWORD, CLIENT)), Ok)
        stored = service.credentials.get_by_id(user.id)
        assert stored.failed_login_attempts == 0
        assert not service.sessions._store.get(session.id).is_active, "Reset ends every session"

        again = run(service, service.reset_password(token, THIRD_PASSWORD, CLIENT))
        assert again.kind is ErrorKind.VALIDATION
        _login(service, password=OTHER_PASSWORD)

    def test_unknown_email_gets_same_answer(self, service, mailer) -> None:
        result = run(service, service.request_password_reset("nobody@example.com", CLIENT))
        assert result.value == RESET_REQUESTED_MESSAGE
        assert mailer.sent == []

    def test_token_expires_after_an_hour(self, service, mailer, clock) -> None:
        register_user(service)
        run(service, service.request_password_reset(ADA, CLIENT))
        token = mailer.last_token(ADA)
        clock.advance(minutes=61)
        assert run(service, service.reset_password(token, OTHER_PASSWORD, CLIENT)).kind is ErrorKind.VALIDATION

    def test_new_request_voids_previous_token(self, service, mailer) -> None:
        register_user(service)
        run(service, service.request_password_reset(ADA, CLIENT))
        first = mailer.last_token(ADA)
        run(service, service.request_password_reset(ADA, CLIENT))
        second = mailer.last_token(ADA)
        assert run(service, service.reset_password(first, OTHER_PASSWORD, CLIENT)).kind is ErrorKind.VALIDATION
        assert isinstance(run(service, service.reset_password(second, OTHER_PASSWORD, CLIENT)), Ok)

    def test_weak_new_password_keeps_token_usable(self, service, mailer) -> None:
        register_user(service)
        run(service, service.request_password_reset(ADA, CLIENT))
        token = mailer.last_token(ADA)
        assert run(service, service.reset_password(token, "password", CLIENT)).kind is ErrorKind.VALIDATION
        assert isinstance(run(service, service.reset_password(token, OTHER_PASSWORD, CLIENT)), Ok)

    def test_reset_requests_are_rate_limited_per_email(self, service) -> None:
        register_user(service)
        for _ in range(3):
            run(service, service.request_password_reset(ADA, CLIENT))
        limited = run(service, service.request_password_reset(ADA, OTHER_CLIENT))
        assert limited.kind is ErrorKind.RATE_LIMITED

    def test_email_failure_is_audited(self, clock) -> None:
        service = build_test_service(clock=clock, mailer=RecordingEmailSender(fail=True))
        try:
            register_user(service)
            result = run(service, service.request_password_reset(ADA, CLIENT))
            assert result.value == RESET_REQUESTED_MESSAGE, "Delivery failure is not revealed to the caller"
            assert _audit_count(service, event_type=events.PASSWORD_RESET_EMAIL_FAILED) == 1
        finally:
            asyncio.run(service.close())


class TestEmailVerification:
    def test_verify_with_registration_token(self, service, mailer) -> None:
        user = register_user(service)
        token = mailer.last_token(ADA)
        assert isinstance(run(service, service.verify_email(token, CLIENT)), Ok)
        assert service.credentials.get_by_id(user.id).email_verified
        assert run(service, service.verify_email(token, CLIENT)).kind is ErrorKind.VALIDATION
        assert run(service, service.send_verification_email(_auth(service))).kind is ErrorKind.CONFLICT

    def test_resend_replaces_token(self, service, mailer) -> None:
        register_user(service)
        first = mailer.last_token(ADA)
        run(service, service.send_verification_email(_auth(service)))
        second = mailer.last_token(ADA)
        assert first != second
        assert run(service, service.verify_email(first, CLIENT)).kind is ErrorKind.VALIDATION
        assert isinstance(run(service, service.verify_email(second, CLIENT)), Ok)

    def test_token_lifetime(self, service, mailer, clock) -> None:
        register_user(service)
        token = mailer.last_token(ADA)
        clock.advance(hours=24)
        assert run(service, service.verify_email(token, CLIENT)).kind is ErrorKind.VALIDATION


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_unlock_account(self, service) -> None:
        user = register_user(service)
        for _ in range(5):
            run(service, service.login(ADA, "Wrong-Guess-11", CLIENT))
        assert service.lockout.seconds_remaining(service.credentials.get_by_id(user.id)) == 900

        admin = _admin(service)
        unlocked = run(service, service.unlock_account(user.id, admin, OTHER_CLIENT)).value
        assert unlocked.failed_login_attempts == 0
        assert unlocked.locked_until is None
        _login(service, client=OTHER_CLIENT)
        assert _audit_count(service, event_type=events.ACCOUNT_UNLOCKED) == 1

    def test_unlock_unknown_user(self, service) -> None:
        admin = _admin(service)
        assert run(service, service.unlock_account(4242, admin, OTHER_CLIENT)).kind is ErrorKind.NOT_FOUND

    def test_revoke_user_sessions(self, service) -> None:
        user = register_user(service)
        tokens = [_login(service).tokens for _ in range(2)]
        admin = _admin(service)
        assert run(service, service.revoke_user_sessions(user.id, admin, OTHER_CLIENT)).value == 2
        for pair in tokens:
            assert run(service, service.authenticate(pair.access_token)).kind is ErrorKind.AUTHENTICATION

    def test_security_metrics(self, service, clock) -> None:
        register_user(service)
        _login(service)
        run(service, service.login(ADA, "Wrong-Guess-11", CLIENT))
        since, metrics = run(service, service.security_metrics("week")).value
        assert metrics.successful_logins == 1
        assert metrics.failed_logins == 1
        assert since == clock.now - timedelta(days=7)
        assert run(service, service.security_metrics("year")).kind is ErrorKind.VALIDATION

    def test_audit_search_sees_buffered_events(self, service) -> None:
        user = register_user(service)
        assert service.audit.pending > 0
        page = run(service, service.search_audit(AuditQuery(user_id=user.id)))
        assert page.total == 1
        assert page.events[0].event_type == events.USER_CREATED

    def test_maintenance(self, service, clock) -> None:
        register_user(service)
        _login(service)
        clock.advance(hours=9)
        report = run(service, service.run_maintenance())
        assert set(report) == {"rate_limit_keys", "blacklisted_tokens", "sessions", "audit_events"}
        assert report["sessions"] == 1
        assert report["rate_limit_keys"] == 1


def test_password_strength_check(service) -> None:
    report = service.check_password_strength("Lovelace-2024!", name="Ada Lovelace", email=ADA)
    assert not report.is_valid
    assert service.check_password_strength(STRONG_PASSWORD).is_valid
