"""
auth/tokens.py -- Signed access/refresh tokens, revocation, and auth cookies.

Security design decisions:
  JWT: python-jose with HS256. Every token carries
         sub   user id (string, as JWT requires)
         sid   server-side session id
         role  user role at issue time
         dfp   device fingerprint (sha256 of "<user agent>_<ip>")
         type  "access" | "refresh"
         jti   random id, the revocation key
       plus iat / nbf / exp / iss / aud.

  Expiry is checked against the injected clock, not the wall clock inside
  python-jose, so tests can move time and so every component agrees on "now".
  python-jose still verifies signature, issuer and audience.

  verify() returns an Err with a distinct kind for each failure:
       TOKEN_INVALID_SIGNATURE -- bad signature, wrong issuer/audience,
                                  malformed claims, or wrong token type
       TOKEN_EXPIRED           -- exp has passed
       TOKEN_REVOKED           -- jti is on the blacklist

  Revocation: an in-memory {jti: (exp, reason)} blacklist owned by the
  TokenService instance. Entries are kept until the token would have expired
  anyway and are then dropped by prune_blacklist(). Process-local -- several
  workers would need a shared store.

  Rotation: the refresh flow (auth/service.py) revokes the presented refresh
  token before issuing a new pair, so a second use of the same refresh token
  comes back as TOKEN_REVOKED.

Cookies: access_token, refresh_token and mfa_verified are all httpOnly,
SameSite=strict, Secure per settings, and carry an explicit max_age.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import Err, ErrorKind, Ok, Result
from auth.models import Session, TokenClaims, TokenPair, User
from core.config import Settings, utc_now

logger = logging.getLogger("learngate.auth")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
MFA_COOKIE = "mfa_verified"

_REQUIRED_CLAIMS = ("sub", "sid", "role", "dfp", "type", "jti", "iat", "exp")


def device_fingerprint(user_agent: str, ip_address: str) -> str:
    return hashlib.sha256(f"{user_agent}_{ip_address}".encode("utf-8")).hexdigest()


class TokenService:
    def __init__(
        self,
        secret_key: str,
        issuer: str = "learngate",
        audience: str = "learngate-users",
        access_minutes: int = 15,
        remember_me_days: int = 7,
        refresh_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_minutes)
        self.remember_me_ttl = timedelta(days=remember_me_days)
        self.refresh_ttl = timedelta(days=refresh_days)
        self._clock = clock
        self._blacklist: dict[str, tuple[datetime, str]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utc_now) -> "TokenService":
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_minutes=settings.access_token_minutes,
            remember_me_days=settings.remember_me_days,
            refresh_days=settings.refresh_token_days,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user: User, session: Session, remember_me: bool = False) -> TokenPair:
        """Issue an access + refresh pair bound to `session`."""
        access_ttl = self.remember_me_ttl if remember_me else self.access_ttl
        return TokenPair(
            access_token=self._encode(user, session, "access", access_ttl),
            refresh_token=self._encode(user, session, "refresh", self.refresh_ttl),
            access_expires_in=int(access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    def _encode(self, user: User, session: Session, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": str(user.id),
            "sid": session.id,
            "role": user.role,
            "dfp": session.device_fingerprint,
            "type": token_type,
            "jti": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def _decode(self, token: str) -> dict | None:
        """Signature, issuer and audience check only. None on any failure."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
            )
        except JWTError:
            return None
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            return None
        return payload

    def verify(self, token: str, expected_type: str = "access") -> Result[TokenClaims]:
        payload = self._decode(token)
        if payload is None:
            return Err(ErrorKind.TOKEN_INVALID_SIGNATURE, "Invalid token.")
        if payload["type"] != expected_type:
            return Err(ErrorKind.TOKEN_INVALID_SIGNATURE, "Invalid token type.")
        claims = _to_claims(payload)
        if claims is None:
            return Err(ErrorKind.TOKEN_INVALID_SIGNATURE, "Invalid token.")
        if claims.expires_at <= self._clock():
            return Err(ErrorKind.TOKEN_EXPIRED, "Token has expired.")
        if claims.jti in self._blacklist:
            return Err(ErrorKind.TOKEN_REVOKED, "Token has been revoked.")
        return Ok(claims)

    def peek(self, token: str) -> TokenClaims | None:
        """Return claims of a correctly signed token, ignoring expiry and revocation.

        Used where the token's identity matters even if it is no longer
        usable: logout, and recognising a replayed refresh token.
        """
        payload = self._decode(token)
        return _to_claims(payload) if payload is not None else None

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token: str, reason: str = "revoked") -> bool:
        """Blacklist a token until its natural expiry. False if it cannot be parsed.

        reason is kept so the refresh flow can tell a rotated-out token
        ("rotated") from one ended by logout. The first reason recorded for a
        jti wins: revoking an already-revoked token leaves it untouched.
        """
        claims = self.peek(token)
        if claims is None:
            return False
        self._blacklist.setdefault(claims.jti, (claims.expires_at, reason))
        return True

    def revocation_reason(self, jti: str) -> str | None:
        entry = self._blacklist.get(jti)
        return entry[1] if entry is not None else None

    def prune_blacklist(self) -> int:
        now = self._clock()
        expired = [jti for jti, (exp, _reason) in self._blacklist.items() if exp <= now]
        for jti in expired:
            del self._blacklist[jti]
        return len(expired)


def _to_claims(payload: dict) -> TokenClaims | None:
    try:
        return TokenClaims(
            user_id=int(payload["sub"]),
            session_id=str(payload["sid"]),
            role=str(payload["role"]),
            device_fingerprint=str(payload["dfp"]),
            token_type=str(payload["type"]),
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(
    response,
    pair: TokenPair,
    secure: bool,
    mfa_verified: bool = False,
    mfa_max_age: int = 24 * 3600,
) -> None:
    """Write the token pair (and optionally the MFA marker) as httpOnly cookies.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES is on (production default).
    max_age: matches each token's lifetime so cookie and token expire together.
    """
    common = {"httponly": True, "samesite": "strict", "secure": secure, "path": "/"}
    response.set_cookie(ACCESS_COOKIE, value=pair.access_token, max_age=pair.access_expires_in, **common)
    response.set_cookie(REFRESH_COOKIE, value=pair.refresh_token, max_age=pair.refresh_expires_in, **common)
    if mfa_verified:
        response.set_cookie(MFA_COOKIE, value="true", max_age=mfa_max_age, **common)


def clear_auth_cookies(response, secure: bool) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, MFA_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="strict")
