"""
tests/conftest.py -- Shared test fixtures for AdminGate unit and integration tests.

This module provides:
  - FakeClock: a controllable clock injected into every store and service
  - memory_url(): isolated named shared-memory SQLite URIs
  - settings / services: a fully wired Services container per test
  - seeded: one active identity per role, all with PASSWORD
  - client: TestClient with a patched lifespan that uses the test services
  - login(): logs in through the real endpoint and returns the JSON body

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
test gets a fresh name, so tests never see each other's rows.

The DEBUG env var must be set before any api/ import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from api.services import Services, build_services
from auth.models import Identity, Role
from auth.tokens import hash_password
from core.config import Settings

PASSWORD = "correct-horse-battery-staple"
# One bcrypt hash shared by every seeded identity keeps fixture setup fast.
PASSWORD_HASH = hash_password(PASSWORD)
TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256-0123456789"


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def memory_url(prefix: str = "admingate") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, "database_url": memory_url()}
    values.update(overrides)
    return Settings(**values)


def create_identity(services: Services, email: str, role: Role, **fields) -> Identity:
    identity = Identity(email=email, display_name=email.split("@")[0], role=role, hashed_password=PASSWORD_HASH, **fields)
    identity_id = services.identities.create_identity(identity)
    return services.identities.get_by_id(identity_id)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def services(settings: Settings, clock: FakeClock) -> Generator[Services, None, None]:
    svc = build_services(settings, clock=clock)
    yield svc
    svc.close()


@pytest.fixture
def seeded(services: Services) -> dict[Role, Identity]:
    """One active identity per role: <role>@example.com / PASSWORD."""
    return {role: create_identity(services, f"{role.value}@example.com", role) for role in Role}


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires the test Services into app.state so routes hit isolated stores.
    The sweep_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def client(services: Services, seeded: dict[Role, Identity]) -> Generator[TestClient, None, None]:
    """TestClient against the real app with test services and seeded identities.

    base_url uses "localhost" so TrustedHostMiddleware accepts the requests.
    The slowapi login limiter is reset so per-address counts never leak
    between tests.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(services)
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=False) as c:
        yield c


def login(client: TestClient, email: str, password: str = PASSWORD, *, path: str = "/api/v1/auth/login", **extra) -> dict:
    """Log in through the real endpoint and return the response body.

    Cookies are cleared afterwards so each test chooses explicitly between
    bearer headers and no credentials.
    """
    resp = client.post(path, json={"email": email, "password": password, **extra})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
