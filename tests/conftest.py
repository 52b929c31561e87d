"""
tests/conftest.py -- Shared test fixtures for learngate tests.

This module provides:
  - clock / mailer / service: a fresh AuthService per test (see helpers.py)
  - api_client: TestClient + service for HTTP tests, with the admin account
    already registered

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because route handlers and run_in_threadpool use worker threads. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before api.main is imported: the app
reads them at import time for SECRET_KEY generation and TrustedHostMiddleware.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import AuthService, build_auth_service
from helpers import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    FakeClock,
    RecordingEmailSender,
    build_test_service,
    make_settings,
    patch_lifespan,
    register_user,
)

# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def service(clock: FakeClock, mailer: RecordingEmailSender) -> Generator[AuthService, None, None]:
    svc = build_test_service(clock=clock, mailer=mailer)
    yield svc
    asyncio.run(svc.close())


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    Credential rate limits are raised so a module's worth of logins from the
    single TestClient address does not trip them; test_api_errors.py covers
    the limits themselves with its own client. The recording mailer is
    reachable as service.mailer.
    """
    service = build_auth_service(
        make_settings(
            login_rate_max=1000,
            register_rate_max=1000,
            password_reset_rate_max=1000,
            mfa_rate_max=1000,
        ),
        mailer=RecordingEmailSender(),
    )
    register_user(service, email=ADMIN_EMAIL, password=ADMIN_PASSWORD, name="Root Operator", role="admin")

    app.router.lifespan_context = patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service
