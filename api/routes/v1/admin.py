"""
api/routes/v1/admin.py -- Security administration endpoints (admin only).

Routes:
  GET    /api/v1/admin/audit-logs            -- filtered, paginated audit events
  GET    /api/v1/admin/security-metrics      -- event counts for day/week/month
  POST   /api/v1/admin/session-cleanup       -- remove expired sessions now
  POST   /api/v1/admin/users/{id}/unlock     -- clear a lockout
  DELETE /api/v1/admin/users/{id}/sessions   -- force-logout a user everywhere
  POST   /api/v1/admin/invitations           -- create a registration invitation

Every route depends on require_admin: 401 without a valid login, 403 for
non-admin roles.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.errors import error_response
from api.models import (
    AuditEventResponse,
    AuditPageResponse,
    CountResponse,
    InvitationCreate,
    InvitationResponse,
    MetricsPeriodEnum,
    RiskLevelEnum,
    SecurityMetricsResponse,
    UserResponse,
)
from auth.dependencies import client_context, get_auth_service, require_admin
from auth.errors import Err
from auth.models import AuditQuery, AuthContext, RiskLevel
from auth.service import AuthService
from core.config import to_iso

router = APIRouter()


@router.get("/admin/audit-logs", response_model=AuditPageResponse)
async def audit_logs(
    user_id: Optional[int] = Query(default=None),
    event_type: Optional[str] = Query(default=None, max_length=100),
    ip_address: Optional[str] = Query(default=None, max_length=64),
    risk_level: Optional[RiskLevelEnum] = Query(default=None),
    start: Optional[datetime] = Query(default=None, description="ISO 8601, inclusive"),
    end: Optional[datetime] = Query(default=None, description="ISO 8601, inclusive"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> AuditPageResponse:
    """Search the audit log, newest first."""
    page = await service.search_audit(
        AuditQuery(
            user_id=user_id,
            event_type=event_type,
            ip_address=ip_address,
            risk_level=RiskLevel(risk_level.value) if risk_level else None,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
    )
    return AuditPageResponse(
        events=[AuditEventResponse.from_event(e) for e in page.events],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/admin/security-metrics", response_model=SecurityMetricsResponse)
async def security_metrics(
    period: MetricsPeriodEnum = Query(default=MetricsPeriodEnum.day),
    admin: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.security_metrics(period.value)
    if isinstance(result, Err):
        return error_response(result)
    since, metrics = result.value
    return SecurityMetricsResponse.from_metrics(metrics, period, to_iso(since))


@router.post("/admin/session-cleanup", response_model=CountResponse)
async def session_cleanup(
    request: Request,
    admin: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.cleanup_sessions(admin, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return CountResponse(message="Expired sessions removed.", count=result.value)


@router.post("/admin/users/{user_id}/unlock", response_model=UserResponse)
async def unlock_user(
    request: Request,
    user_id: int,
    admin: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.unlock_account(user_id, admin, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return UserResponse.from_user(result.value)


@router.delete("/admin/users/{user_id}/sessions", response_model=CountResponse)
async def revoke_user_sessions(
    request: Request,
    user_id: int,
    admin: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    """End every session of another user. Their access tokens stop working at once."""
    result = await service.revoke_user_sessions(user_id, admin, client_context(request))
    if isinstance(result, Err):
        return error_response(result)
    return CountResponse(message="Sessions ended.", count=result.value)


@router.post("/admin/invitations", response_model=InvitationResponse, status_code=201)
def create_invitation(
    body: InvitationCreate,
    admin: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    result = service.create_invitation(admin, body.role.value, body.email)
    if isinstance(result, Err):
        return error_response(result)
    return InvitationResponse.from_invitation(result.value)
