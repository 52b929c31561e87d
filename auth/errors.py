"""
auth/errors.py -- Explicit result types for the auth services.

Service functions return Ok(value) or Err(kind, message) instead of raising
for expected failures (bad password, locked account, expired token). The
caller branches on the result, so every failure path is visible where it is
handled. Unexpected infrastructure failures still raise and are turned into
a generic 500 by the API's catch-all handler.

    result = await service.login(...)
    if isinstance(result, Err):
        return error_response(result)
    outcome = result.value

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    AUTHENTICATION = "authentication_failed"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_INVALID_SIGNATURE = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INTERNAL = "internal_error"

    @property
    def is_token_error(self) -> bool:
        return self in (ErrorKind.TOKEN_INVALID_SIGNATURE, ErrorKind.TOKEN_EXPIRED, ErrorKind.TOKEN_REVOKED)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    """A named failure. Messages are safe to show to clients.

    retry_after is set for RATE_LIMITED and ACCOUNT_LOCKED (seconds).
    feedback carries password-policy errors for VALIDATION failures.
    """

    kind: ErrorKind
    message: str
    retry_after: int | None = None
    feedback: tuple[str, ...] = ()


Result = Union[Ok[T], Err]

# Identical text for "no such user" and "wrong password" so the response
# cannot be used to enumerate accounts.
GENERIC_LOGIN_FAILURE = "Invalid email or password."
