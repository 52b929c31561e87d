"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and has no
compatibility shim.

These functions are CPU-bound on purpose. Async callers run them through
starlette.concurrency.run_in_threadpool so a hash does not stall the event
loop for every other request.

Layer rule: stdlib + bcrypt only.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import bcrypt

logger = logging.getLogger("learngate.auth")

# bcrypt only reads the first 72 bytes; bcrypt 5 raises instead of truncating.
_BCRYPT_MAX_BYTES = 72


def _to_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_to_bytes(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is a data problem, not a login failure the user
    can fix -- it is logged and treated as a mismatch.
    """
    try:
        return bcrypt.checkpw(_to_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        logger.error("Stored password hash is not a valid bcrypt hash")
        return False


@lru_cache(maxsize=4)
def dummy_hash(rounds: int = 12) -> str:
    """A throwaway hash with the same cost as real ones.

    Login verifies against this when the email is unknown, so "no such user"
    costs the same bcrypt work as "wrong password" and response time does not
    reveal which accounts exist.
    """
    return hash_password("learngate_timing_dummy", rounds)
