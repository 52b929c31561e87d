"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. "access_token" cookie -- set by the login endpoint.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on AuthService.authenticate(), which verifies the token,
validates the server-side session, and loads the user.

get_current_user() raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import ipaddress

from fastapi import Depends, HTTPException, Request

from auth.errors import Err
from auth.models import AuthContext, ClientContext
from auth.service import AuthService
from auth.tokens import ACCESS_COOKIE


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _is_trusted(ip: str, trusted_proxies: list[str]) -> bool:
    """True if `ip` equals a trusted entry or falls inside a trusted CIDR network."""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        # Non-IP peers (unix sockets, the test transport) can only match by name.
        return ip in trusted_proxies
    for entry in trusted_proxies:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def client_ip(request: Request, trusted_proxies: list[str]) -> str:
    """The address rate limits and audit records are keyed on.

    Forwarding headers are honoured only when the socket peer is a trusted
    proxy; otherwise any client could pick its own rate-limit key. The
    X-Forwarded-For chain is walked right to left and the first hop that is
    not itself a trusted proxy is the client.
    """
    peer = request.client.host if request.client else ""
    if not _is_trusted(peer, trusted_proxies):
        return peer or "unknown"

    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, trusted_proxies):
            return hop
    real_ip = request.headers.get("X-Real-IP", "").strip()
    return real_ip or peer


def client_context(request: Request) -> ClientContext:
    """Client IP and user agent for rate limiting, fingerprints and audit."""
    trusted = get_auth_service(request).settings.trusted_proxies
    return ClientContext(
        ip_address=client_ip(request, trusted),
        user_agent=request.headers.get("User-Agent") or "unknown",
    )


def bearer_or_cookie_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


async def get_current_user(
    request: Request, service: AuthService = Depends(get_auth_service)
) -> AuthContext:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(auth: AuthContext = Depends(get_current_user)): ...
    """
    token = bearer_or_cookie_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    result = await service.authenticate(token)
    if isinstance(result, Err):
        raise HTTPException(
            status_code=401,
            detail={"code": result.kind.value, "message": result.message},
        )
    return result.value


async def require_admin(auth: AuthContext = Depends(get_current_user)) -> AuthContext:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    if auth.user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return auth
