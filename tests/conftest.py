"""
tests/conftest.py -- Shared test fixtures for AuthGate unit and integration tests.

This module provides:
  - FrozenClock: an injectable clock tests can move forward explicitly
  - RecordingGateway / FailingGateway: EmailGateway doubles
  - store, passwords, token_hasher, service: component fixtures over a
    private in-memory database, one per test
  - api_client: TestClient over the real app with a patched lifespan

Design: Unit fixtures use plain sqlite:///:memory:. SQLAlchemy pins one
connection per thread for it, and unit tests never leave the test thread.
api_client uses a named shared-memory URI instead, because TestClient runs
sync route handlers in a thread pool and each worker thread would otherwise
see its own blank database.

DEBUG must be set before any core/auth import so get_settings() generates a
SECRET_KEY instead of raising. The argon2 cost variables keep hashing fast;
the algorithm is unchanged.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.ephemeral import EphemeralTokenManager
from auth.passwords import PasswordHasher, PasswordPolicy
from auth.refresh import RefreshTokenManager
from auth.service import AuthService, TokenLifetimes, build_auth_service
from auth.store import CredentialStore
from auth.tokens import AccessTokenCodec, TokenHasher
from core.config import get_settings
from notify.email import NotificationError

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"
FRONTEND_URL = "https://app.example.com"

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway:
    """Collects every message instead of sending it."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str, str | None]] = []
        self.resets: list[tuple[str, str, str | None]] = []

    def send_verification_email(self, to: str, link: str, display_name: str | None) -> None:
        self.verifications.append((to, link, display_name))

    def send_password_reset_email(self, to: str, link: str, display_name: str | None) -> None:
        self.resets.append((to, link, display_name))

    def last_verification_token(self) -> str:
        return token_from_link(self.verifications[-1][1])

    def last_reset_token(self) -> str:
        return token_from_link(self.resets[-1][1])


class FailingGateway:
    """Every delivery fails the way a provider outage would."""

    def send_verification_email(self, to: str, link: str, display_name: str | None) -> None:
        raise NotificationError("provider unavailable")

    def send_password_reset_email(self, to: str, link: str, display_name: str | None) -> None:
        raise NotificationError("provider unavailable")


def token_from_link(link: str) -> str:
    return link.rsplit("/", 1)[1]


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def token_hasher() -> TokenHasher:
    return TokenHasher(TEST_SECRET)


@pytest.fixture
def passwords() -> PasswordHasher:
    # Cheapest argon2id parameters argon2-cffi accepts.
    return PasswordHasher(PasswordPolicy(), time_cost=1, memory_cost=8192, parallelism=1)


@pytest.fixture
def access_codec() -> AccessTokenCodec:
    return AccessTokenCodec(TEST_SECRET, timedelta(minutes=15))


@pytest.fixture
def refresh_manager(store, token_hasher, clock) -> RefreshTokenManager:
    return RefreshTokenManager(store, token_hasher, timedelta(days=30), clock)


@pytest.fixture
def ephemeral_manager(store, token_hasher, clock) -> EphemeralTokenManager:
    return EphemeralTokenManager(store, token_hasher, clock)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def service_factory(store, passwords, access_codec, refresh_manager, ephemeral_manager, gateway, clock):
    """Return a builder for AuthService over the shared component fixtures.

    Tests that need a different gateway or a background executor call it
    with overrides; everything else comes from the fixtures above.
    """

    def build(gateway_override=None, background=None) -> AuthService:
        return AuthService(
            store=store,
            passwords=passwords,
            access_tokens=access_codec,
            refresh_tokens=refresh_manager,
            ephemeral_tokens=ephemeral_manager,
            gateway=gateway_override or gateway,
            frontend_url=FRONTEND_URL,
            lifetimes=TokenLifetimes(verification=timedelta(hours=24), password_reset=timedelta(hours=1)),
            clock=clock,
            background=background,
        )

    return build


@pytest.fixture
def service(service_factory) -> AuthService:
    return service_factory()


@pytest.fixture
def failing_service(service_factory) -> AuthService:
    """AuthService whose gateway fails every delivery."""
    return service_factory(gateway_override=FailingGateway())


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state. The purge_task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingGateway], None, None]:
    """Yield (client, gateway) for API integration tests.

    One isolated shared-memory database per test module. Rate limiting is
    switched off so modules can register and log in freely.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = CredentialStore(f"sqlite:///file:authgate_{db_name}?mode=memory&cache=shared&uri=true")
    gateway = RecordingGateway()
    service = build_auth_service(get_settings(), store=store, gateway=gateway)

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(service)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, gateway

    limiter.enabled = True
    app.router.lifespan_context = original_lifespan
    store.close()
