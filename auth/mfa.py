"""
auth/mfa.py -- TOTP second factor (RFC 6238) via pyotp.

Codes are accepted one 30-second step either side of now, which covers
ordinary phone clock drift.
"""

from __future__ import annotations

import pyotp


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    """otpauth:// URI for authenticator apps (rendered as a QR code client-side)."""
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def verify_code(secret: str | None, code: str | None) -> bool:
    if not secret or not code:
        return False
    code = code.strip().replace(" ", "")
    if not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=1)
