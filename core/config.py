"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for learngate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a key with a warning,
      production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies
  on key entropy -- a short key lets an attacker brute-force the HMAC.

  secure_cookies defaults to the opposite of DEBUG, so a production process
  never hands out auth cookies over plain HTTP unless told to.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("learngate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'learngate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests usually build one directly,
    e.g. Settings(debug=True, bcrypt_rounds=4), and inject it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Peers (IPs or CIDR networks) whose X-Forwarded-For / X-Real-IP headers
    # are believed. Any other peer is identified by its socket address.
    trusted_proxies: list[str] = ["127.0.0.1", "::1"]
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    # None means "derive from debug" -- resolved in the validator.
    secure_cookies: Optional[bool] = None
    jwt_issuer: str = "learngate"
    jwt_audience: str = "learngate-users"
    access_token_minutes: int = 15
    remember_me_days: int = 7
    refresh_token_days: int = 7
    mfa_cookie_hours: int = 24

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_absolute_hours: int = 8
    session_inactivity_minutes: int = 30
    max_concurrent_sessions: int = 3

    # ------------------------------------------------------------------
    # Lockout and rate limiting
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_minutes: int = 15

    login_rate_max: int = 5
    login_rate_window_seconds: int = 15 * 60
    register_rate_max: int = 3
    register_rate_window_seconds: int = 60 * 60
    password_reset_rate_max: int = 3
    password_reset_rate_window_seconds: int = 60 * 60
    mfa_rate_max: int = 10
    mfa_rate_window_seconds: int = 5 * 60
    # slowapi limit for the cheap, non-credential endpoints.
    public_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 8
    password_max_length: int = 128
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_special: bool = True
    password_history_limit: int = 5
    password_max_age_days: int = 90
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    audit_batch_size: int = 50
    audit_flush_interval_seconds: float = 5.0
    audit_retention_days: int = 365
    maintenance_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Email and MFA
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@learngate.local"
    mfa_issuer: str = "learngate"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy and resolve derived defaults.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing. A random key in production would silently
            log every user out on each restart.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Time helpers
#
# Every component takes a `clock` callable defaulting to utc_now so tests can
# drive time forward without sleeping.
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as a fixed-width UTC ISO 8601 string.

    Fixed width (always microseconds, always +00:00) keeps lexicographic
    order equal to chronological order, which the SQL comparisons rely on.
    """
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
