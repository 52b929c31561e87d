"""
tests/helpers.py -- Builders and fakes shared by the test modules.

Kept out of conftest.py so test modules can import them by name; conftest
holds only fixtures.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Coroutine
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from auth.emailer import EmailSender
from auth.models import ClientContext
from auth.service import AuthService, build_auth_service
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"

CLIENT = ClientContext(ip_address="203.0.113.10", user_agent="pytest-agent/1.0")
OTHER_CLIENT = ClientContext(ip_address="198.51.100.7", user_agent="other-agent/2.0")

# Policy-compliant passwords that contain none of the test names or emails.
STRONG_PASSWORD = "Blue-Kettle-42"
OTHER_PASSWORD = "Red-Canyon-93"
THIRD_PASSWORD = "Quiet-Harbor-58"


class FakeClock:
    """Deterministic clock. Call it for "now"; advance() moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailSender(EmailSender):
    """EmailSender that records messages. fail=True simulates an SMTP outage."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__(host="smtp.test", from_address="no-reply@learngate.test")
        self.fail = fail
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> bool:
        self.sent.append((to, subject, body))
        return not self.fail

    def last_token(self, to: str) -> str:
        """Extract the token query parameter from the newest email to `to`."""
        for recipient, _subject, body in reversed(self.sent):
            if recipient == to:
                return body.split("token=", 1)[1].split()[0]
        raise AssertionError(f"no email sent to {to}")


# ---------------------------------------------------------------------------
# Service helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "test") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": memory_db_url(),
        "bcrypt_rounds": 4,
        "app_base_url": "https://learn.test",
    }
    values.update(overrides)
    return Settings(**values)


def build_test_service(
    clock: FakeClock | None = None,
    mailer: RecordingEmailSender | None = None,
    **overrides: Any,
) -> AuthService:
    """AuthService on a fresh in-memory database with cheap bcrypt rounds."""
    return build_auth_service(
        make_settings(**overrides),
        mailer=mailer or RecordingEmailSender(),
        clock=clock or FakeClock(),
    )


def run(service: AuthService, coro: Coroutine[Any, Any, Any]) -> Any:
    """Run one service coroutine plus any email tasks it spawned."""

    async def _go() -> Any:
        result = await coro
        await service.wait_for_background()
        return result

    return asyncio.run(_go())


def register_user(
    service: AuthService,
    email: str = "ada@example.com",
    password: str = STRONG_PASSWORD,
    name: str = "Ada Lovelace",
    role: str = "student",
    client: ClientContext = CLIENT,
):
    """Create an account directly (bypasses the registration rate limit)."""
    result = run(service, service.create_account(email, password, name, client, role=role))
    assert hasattr(result, "value"), f"account creation failed: {result}"
    return result.value


ADMIN_EMAIL = "root@learngate.test"
ADMIN_PASSWORD = "Amber-Falcon-71"


def patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built test AuthService into app.state so TestClient routes
    see an isolated in-memory database rather than the production one. The
    flush and maintenance loops are not started; tests flush explicitly.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        yield
        await service.close()

    return test_lifespan
