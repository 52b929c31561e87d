"""
api/errors.py -- Translate service Err results into HTTP error responses.

Every route maps an Err through error_response() so status codes and the
{"error": {...}} envelope stay identical across the API. 423 and 429 carry a
Retry-After header.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import Err, ErrorKind

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.TOKEN_INVALID_SIGNATURE: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_REVOKED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
}


def status_for(kind: ErrorKind) -> int:
    return _STATUS_BY_KIND.get(kind, 500)


def error_response(err: Err) -> JSONResponse:
    response = JSONResponse(
        status_code=status_for(err.kind),
        content=ErrorResponse(
            error=ErrorDetail(
                code=err.kind.value,
                message=err.message,
                feedback=list(err.feedback) or None,
                retry_after=err.retry_after,
            )
        ).model_dump(exclude_none=True),
    )
    if err.retry_after is not None:
        response.headers["Retry-After"] = str(err.retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response
