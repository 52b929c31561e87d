"""
api/routes/v1/auth.py -- Authentication and account self-service REST endpoints.

Routes:
  POST   /api/v1/auth/login              -- password (+ TOTP) login; sets token cookies
  POST   /api/v1/auth/register           -- create a student (or invited) account
  POST   /api/v1/auth/logout             -- revoke presented tokens; always 200
  DELETE /api/v1/auth/logout             -- end every session of the user
  POST   /api/v1/auth/refresh            -- rotate the refresh token
  POST   /api/v1/auth/password-reset     -- request a reset email (generic answer)
  PUT    /api/v1/auth/password-reset     -- complete a reset with the emailed token
  POST   /api/v1/auth/password/change    -- change password (requires auth)
  POST   /api/v1/auth/password/strength  -- score a candidate password (public)
  GET    /api/v1/auth/me                 -- current user (requires auth)
  PATCH  /api/v1/auth/profile            -- update display name (requires auth)
  GET    /api/v1/auth/sessions           -- list own active sessions
  DELETE /api/v1/auth/sessions/{id}      -- end one of own sessions
  POST   /api/v1/auth/mfa/setup          -- generate a TOTP secret
  POST   /api/v1/auth/mfa/activate       -- confirm the secret with a code
  POST   /api/v1/auth/mfa/disable        -- turn TOTP off (password + code)
  POST   /api/v1/auth/verify-email       -- redeem an email verification token
  POST   /api/v1/auth/verify-email/resend

Security:
  Credential endpoints are throttled inside AuthService (per IP / email /
  user), which also drives lockout. slowapi only guards the cheap public
  endpoints that AuthService does not count.
  Login and refresh responses carry Cache-Control: no-store.
  Logout clears cookies even if revocation fails.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.errors import error_response
from api.limiter import limiter, public_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaRequiredResponse,
    MfaSetupResponse,
    PasswordResetComplete,
    PasswordResetRequest,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    ProfilePatch,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import bearer_or_cookie_token, client_context, get_auth_service, get_current_user
from auth.errors import Err
from auth.models import AuthContext
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies

logger = logging.getLogger("learngate.api")

# Auth policy:
# - login, register, refresh, password-reset, password/strength, verify-email: public
# - POST logout: public -- revokes whatever tokens are presented, if any
# - everything else: requires auth (get_current_user)
router = APIRouter()


def _secure(service: AuthService) -> bool:
    return bool(service.settings.secure_cookies)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
async def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password; set access/refresh cookies.

    Unknown email and wrong password produce the same 401 body. The lockout
    and rate-limit errors (423 / 429) carry Retry-After.
    """
    result = await service.login(
        body.email,
        body.password,
        client_context(request),
        mfa_code=body.mfa_code,
        remember_me=body.remember_me,
    )
    if isinstance(result, Err):
        return error_response(result)

    outcome = result.value
    if outcome.mfa_required:
        resp = JSONResponse(status_code=200, content=MfaRequiredResponse().model_dump())
        resp.headers["Cache-Control"] = "no-store"
        return resp

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(outcome.user),
            access_token=outcome.tokens.access_token,
            refresh_token=outcome.tokens.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=outcome.tokens.access_expires_in,
            password_change_required=outcome.password_change_required,
        ).model_dump(),
    )
    set_auth_cookies(
        resp,
        outcome.tokens,
        secure=_secure(service),
        mfa_verified=outcome.mfa_verified,
        mfa_max_age=service.settings.mfa_cookie_hours * 3600,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/register", response_model=RegisterResponse)
async def register(
    request: Request,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Create an account. Invitation codes grant the invited role; otherwise student."""
    result = await service.register(
        body.email, body.password, body.name, client_context(request), invite_code=body.invite_code
    )
    if isinstance(result, Err):
        return error_response(result)
    return RegisterResponse(user=UserResponse.from_user(result.value))


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the presented tokens and end their session.

    Always 200 and always clears the cookies: a client that asks to log out
    must end up logged out locally even if the server side fails.
    """
    try:
        await service.logout(
            client_context(request),
            access_token=bearer_or_cookie_token(request),
            refresh_token=request.cookies.get(REFRESH_COOKIE),
        )
    except Exception:
        logger.exception("Logout failed; clearing cookies anyway")
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp, secure=_secure(service))
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    body: Optional[RefreshRequest] = None,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Exchange a refresh token for a new pair. The old refresh token is revoked."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Refresh token required."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    result = await service.refresh(token, client_context(request))
    if isinstance(result, Err):
        resp = error_response(result)
        clear_auth_cookies(resp, secure=_secure(service))
        return resp

    pair = result.value.tokens
    resp = JSONResponse(
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.access_expires_in,
        ).model_dump()
    )
    set_auth_cookies(resp, pair, secure=_secure(service))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/password-reset", response_model=MessageResponse)
async def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Start a password reset. The answer is the same whether or not the email is registered."""
    result = await service.request_password_reset(body.email, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message=result.value)


@router.put("/auth/password-reset", response_model=MessageResponse)
async def complete_password_reset(
    request: Request,
    body: PasswordResetComplete,
    service: AuthService = Depends(get_auth_service),
):
    """Set a new password with an emailed reset token. Ends every session of the account."""
    result = await service.reset_password(body.token, body.new_password, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


@limiter.limit(public_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/password/strength", response_model=PasswordStrengthResponse)
async def password_strength(
    request: Request,
    body: PasswordStrengthRequest,
    service: AuthService = Depends(get_auth_service),
) -> PasswordStrengthResponse:
    """Score a candidate password against the policy. Nothing is stored."""
    report = service.check_password_strength(body.password, name=body.name, email=body.email)
    return PasswordStrengthResponse.from_result(report)


@limiter.limit(public_limit)
@router.post("/auth/verify-email", response_model=MessageResponse)
async def verify_email(
    request: Request,
    body: VerifyEmailRequest,
    service: AuthService = Depends(get_auth_service),
):
    result = await service.verify_email(body.token, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message="Email address verified.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.delete("/auth/logout", response_model=MessageResponse)
async def logout_everywhere(
    request: Request,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """End every session of the current user, on every device."""
    result = await service.logout_everywhere(
        auth, client_context(request), refresh_token=request.cookies.get(REFRESH_COOKIE)
    )
    if isinstance(result, Err):
        return error_response(result)
    resp = JSONResponse(
        content=MessageResponse(message=f"Logged out of {result.value} session(s).").model_dump()
    )
    clear_auth_cookies(resp, secure=_secure(service))
    return resp


@router.post("/auth/password/change", response_model=MessageResponse)
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Change password. Other sessions are ended; the current one stays."""
    result = await service.change_password(
        auth, body.current_password, body.new_password, client_context(request)
    )
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message="Password changed.")


@router.get("/auth/me", response_model=UserResponse)
async def me(auth: AuthContext = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return UserResponse.from_user(auth.user)


@router.patch("/auth/profile", response_model=UserResponse)
async def update_profile(
    body: ProfilePatch,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.update_profile(auth, body.name)
    if isinstance(result, Err):
        return error_response(result)
    return UserResponse.from_user(result.value)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    """List the current user's active sessions; the calling one is flagged current."""
    return [SessionResponse.from_session(s, auth.session.id) for s in service.list_sessions(auth)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
async def end_session(
    request: Request,
    session_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """End one of the caller's own sessions. Other users' sessions answer 404 [IDOR guard]."""
    result = await service.end_session(auth, session_id, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return Response(status_code=204)


@router.post("/auth/mfa/setup", response_model=MfaSetupResponse)
async def mfa_setup(
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Generate a TOTP secret. It is inactive until confirmed via /mfa/activate."""
    result = await service.setup_mfa(auth)
    if isinstance(result, Err):
        return error_response(result)
    resp = JSONResponse(
        content=MfaSetupResponse(
            secret=result.value.secret, provisioning_uri=result.value.provisioning_uri
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/mfa/activate", response_model=MessageResponse)
async def mfa_activate(
    request: Request,
    body: MfaCodeRequest,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.activate_mfa(auth, body.code, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message="Two-factor authentication enabled.")


@router.post("/auth/mfa/disable", response_model=MessageResponse)
async def mfa_disable(
    request: Request,
    body: MfaDisableRequest,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.disable_mfa(auth, body.password, body.code, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message="Two-factor authentication disabled.")


@router.post("/auth/verify-email/resend", response_model=MessageResponse)
async def resend_verification(
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.send_verification_email(auth)
    if isinstance(result, Err):
        return error_response(result)
    return MessageResponse(message="Verification email sent.")
