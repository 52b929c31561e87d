"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

This limiter only covers cheap public endpoints. Login, registration, reset
and MFA attempts are counted by auth.rate_limit inside AuthService, because
those limits feed lockout and audit decisions.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def public_limit() -> str:
    """Limit string for public endpoints, read at request time from settings."""
    return get_settings().public_rate_limit
