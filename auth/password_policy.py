"""
auth/password_policy.py -- Password strength scoring and policy enforcement.

Scoring is additive, then clamped to [0, 100]:

    +20   length >= min_length
    +15   each of uppercase / lowercase / digit / special present
    -10   three or more identical characters in a row (aaa, 111)
    -20   contains a common password (substring, case-insensitive)
    -15   contains the user's name part or email local-part (3+ chars)
    +n    entropy bonus: min(20, (len-8)*2) + min(15, (unique-4)*2)
    -25   matches one of the recent password-history hashes
    -5    contains a dictionary word (warning only)

Buckets: <30 very_weak, <50 weak, <70 fair, <85 good, else strong.
A password is valid only with zero errors AND score >= 60.

validate() is pure for a given (password, user_info, history): the only
non-trivial work is the bcrypt comparison against history hashes, which is
why async callers run it in a worker thread.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
import re
import secrets
import string
from collections.abc import Sequence
from datetime import datetime, timedelta

from auth.models import PasswordAge, PasswordValidationResult
from auth.passwords import verify_password
from core.config import Settings

# ---------------------------------------------------------------------------
# Patterns and word lists
# ---------------------------------------------------------------------------

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_REPEATED = re.compile(r"(.)\1{2,}")

COMMON_PASSWORDS = (
    "password",
    "123456",
    "password123",
    "admin",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "qwerty",
    "abc123",
)

DICTIONARY_WORDS = (
    "password",
    "admin",
    "user",
    "login",
    "welcome",
    "hello",
    "world",
    "test",
    "demo",
    "example",
    "sample",
    "default",
    "guest",
)

_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


class PasswordPolicy:
    """Configurable password policy.

    Composition classes flagged as required produce a hard error when
    missing; the rest only contribute their score bonus when present.
    """

    def __init__(
        self,
        min_length: int = 8,
        max_length: int = 128,
        require_uppercase: bool = True,
        require_lowercase: bool = True,
        require_numbers: bool = True,
        require_special: bool = True,
        history_limit: int = 5,
        max_age_days: int = 90,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.require_uppercase = require_uppercase
        self.require_lowercase = require_lowercase
        self.require_numbers = require_numbers
        self.require_special = require_special
        self.history_limit = history_limit
        self.max_age = timedelta(days=max_age_days)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_numbers=settings.password_require_numbers,
            require_special=settings.password_require_special,
            history_limit=settings.password_history_limit,
            max_age_days=settings.password_max_age_days,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        password: str,
        user_info: dict[str, str] | None = None,
        history: Sequence[str] = (),
    ) -> PasswordValidationResult:
        """Score a candidate password.

        Args:
            password:  Candidate plaintext.
            user_info: Optional {"name": ..., "email": ...} for the personal
                       information check.
            history:   bcrypt hashes of the user's recent passwords, newest
                       first. Only the first history_limit are compared.
        """
        errors: list[str] = []
        warnings: list[str] = []
        score = 0

        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long.")
        else:
            score += 20
        if len(password) > self.max_length:
            errors.append(f"Password must be at most {self.max_length} characters long.")

        composition = (
            (_UPPER, self.require_uppercase, "Password must contain at least one uppercase letter."),
            (_LOWER, self.require_lowercase, "Password must contain at least one lowercase letter."),
            (_DIGIT, self.require_numbers, "Password must contain at least one number."),
            (_SPECIAL, self.require_special, "Password must contain at least one special character (!@#$%^&* etc.)."),
        )
        for pattern, required, message in composition:
            if pattern.search(password):
                score += 15
            elif required:
                errors.append(message)

        if _REPEATED.search(password):
            errors.append("Password must not contain three or more repeated characters (e.g. aaa, 111).")
            score -= 10

        lowered = password.lower()
        if any(common in lowered for common in COMMON_PASSWORDS):
            errors.append("This password is too common. Choose something less predictable.")
            score -= 20

        if user_info and _contains_personal_info(lowered, user_info):
            errors.append("Password must not contain your name or email address.")
            score -= 15

        score += _entropy_bonus(password)

        if any(word in lowered for word in DICTIONARY_WORDS):
            warnings.append("Password contains a dictionary word. A less guessable password is recommended.")
            score -= 5

        if history and self._matches_history(password, history):
            errors.append(f"Password must not match any of your last {self.history_limit} passwords.")
            score -= 25

        score = max(0, min(100, score))
        return PasswordValidationResult(
            is_valid=not errors and score >= 60,
            score=score,
            strength=strength_for(score),
            errors=tuple(errors),
            warnings=tuple(warnings),
            estimated_crack_time=estimate_crack_time(password),
        )

    def _matches_history(self, password: str, history: Sequence[str]) -> bool:
        return any(verify_password(password, h) for h in list(history)[: self.history_limit])

    # ------------------------------------------------------------------
    # Age
    # ------------------------------------------------------------------

    def check_age(self, password_changed_at: datetime | None, now: datetime) -> PasswordAge:
        """Report how close a password is to the maximum age.

        A missing change timestamp is treated as a fresh password.
        """
        if password_changed_at is None:
            return PasswordAge(days_since_change=0, must_change=False, days_until_expiry=self.max_age.days)
        age = now - password_changed_at
        if age >= self.max_age:
            return PasswordAge(days_since_change=age.days, must_change=True, days_until_expiry=0)
        remaining = self.max_age - age
        return PasswordAge(
            days_since_change=age.days,
            must_change=False,
            days_until_expiry=math.ceil(remaining.total_seconds() / 86400),
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, length: int = 16) -> str:
        """Generate a random password that satisfies every required class."""
        length = max(length, self.min_length)
        pools = []
        if self.require_uppercase:
            pools.append(string.ascii_uppercase)
        if self.require_lowercase:
            pools.append(string.ascii_lowercase)
        if self.require_numbers:
            pools.append(string.digits)
        if self.require_special:
            pools.append(_SYMBOLS)
        alphabet = string.ascii_letters + string.digits + _SYMBOLS
        rng = secrets.SystemRandom()
        while True:
            chars = [secrets.choice(pool) for pool in pools]
            chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
            rng.shuffle(chars)
            candidate = "".join(chars)
            # Random output can still trip the repeat or common-word rules.
            if self.validate(candidate).is_valid:
                return candidate


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _contains_personal_info(lowered_password: str, user_info: dict[str, str]) -> bool:
    name = user_info.get("name") or ""
    for part in name.lower().split():
        if len(part) >= 3 and part in lowered_password:
            return True
    email = user_info.get("email") or ""
    local_part = email.split("@")[0].lower()
    return len(local_part) >= 3 and local_part in lowered_password


def _entropy_bonus(password: str) -> int:
    length_bonus = min(20, (len(password) - 8) * 2)
    diversity_bonus = min(15, (len(set(password)) - 4) * 2)
    return length_bonus + diversity_bonus


def strength_for(score: int) -> str:
    if score < 30:
        return "very_weak"
    if score < 50:
        return "weak"
    if score < 70:
        return "fair"
    if score < 85:
        return "good"
    return "strong"


def _charset_size(password: str) -> int:
    size = 0
    if re.search(r"[a-z]", password):
        size += 26
    if re.search(r"[A-Z]", password):
        size += 26
    if re.search(r"[0-9]", password):
        size += 10
    if re.search(r"[^a-zA-Z0-9]", password):
        size += 32
    return size


def estimate_crack_time(password: str) -> str:
    """Rough brute-force estimate at 10^9 guesses per second, average case."""
    size = _charset_size(password)
    if size == 0:
        return "< 1 second"
    # log10 keeps long passwords from overflowing a float.
    log_seconds = len(password) * math.log10(size) - math.log10(2e9)
    if log_seconds > 12:
        return "centuries"
    seconds = 10**log_seconds
    if seconds < 1:
        return "< 1 second"
    if seconds < 60:
        return f"{round(seconds)} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    if seconds < 86400:
        return f"{round(seconds / 3600)} hours"
    if seconds < 31536000:
        return f"{round(seconds / 86400)} days"
    if seconds < 3153600000:
        return f"{round(seconds / 31536000)} years"
    return "centuries"
