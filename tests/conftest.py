"""
tests/conftest.py -- Shared test fixtures for AdminGate tests.

This module provides:
  - make_settings(): a Settings instance with a static admin, a config API
    token and two federated providers, with keyword overrides
  - _make_test_stores(): creates isolated in-memory DBs for admins + sessions
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient with a static admin, a primary and a secondary admin
  - setup_client: TestClient in first-run state (no admin of any kind)
  - FakeClock: a settable clock for expiry tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool, and the clustered
session lookup runs on its own executor. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
ALLOWED_HOSTS must include "testserver" (the TestClient Host header) before
api.main is imported, because the TrustedHost middleware is built at import.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_auth_services
from auth.admin_service import AdminService
from auth.passwords import hash_password
from auth.store import AdminStore, SessionStore
from core.config import LDAPProviderConfig, OIDCProviderConfig, Settings

TEST_SECRET_KEY = "k" * 64
CONFIG_ADMIN = "configadmin"
CONFIG_PASSWORD = "configpass123"
CONFIG_PASSWORD_HASH = hash_password(CONFIG_PASSWORD)
CONFIG_API_TOKEN = "cfg-token-0123456789abcdef0123456789abcdef"
PRIMARY_USERNAME = "primary"
PRIMARY_PASSWORD = "primarypass123"
SECONDARY_USERNAME = "secondary"
SECONDARY_PASSWORD = "secondarypass123"
IDP_ISSUER = "https://idp.example.com"


def make_settings(**overrides) -> Settings:
    """Settings for tests. Keyword overrides win over the defaults below."""
    values = dict(
        debug=True,
        secret_key=TEST_SECRET_KEY,
        admin_username=CONFIG_ADMIN,
        admin_password=CONFIG_PASSWORD_HASH,
        admin_api_token=CONFIG_API_TOKEN,
        allowed_hosts=["testserver", "localhost"],
        oidc_providers=[
            OIDCProviderConfig(
                id="corp",
                name="Corporate SSO",
                enabled=True,
                issuer=IDP_ISSUER,
                client_id="admingate-client",
                client_secret="admingate-secret",
                redirect_url="http://testserver/api/v1/sso/oidc/corp/callback",
                admin_groups=["admin-group"],
            ),
            OIDCProviderConfig(id="legacy", enabled=False, issuer="https://old.example.com"),
        ],
        ldap_providers=[
            LDAPProviderConfig(id="p1", name="Directory", enabled=True, admin_groups=["admin-group"]),
            LDAPProviderConfig(id="p2", enabled=False, admin_groups=["admin-group"]),
        ],
    )
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    """Settable clock. Call it to read the time; advance() moves it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def shared_memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[AdminStore, SessionStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'setup').
    """
    url = shared_memory_url(f"test_admingate_{db_suffix}")
    return AdminStore(db_url=url), SessionStore(db_url=url)


def _patch_lifespan(cfg: Settings, admin_store: AdminStore, session_store: SessionStore | None):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores and settings through the same attach_auth_services()
    the real lifespan uses. The cleanup_task is a long-sleeping coroutine
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_auth_services(app, cfg, admin_store, session_store)
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()
        app.state.auth_manager.close()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request: pytest.FixtureRequest) -> Generator[TestClient, None, None]:
    """Yield a TestClient for API integration tests.

    Identities available:
      - static admin CONFIG_ADMIN / CONFIG_PASSWORD and bearer CONFIG_API_TOKEN
      - persistent primary PRIMARY_USERNAME / PRIMARY_PASSWORD
      - persistent secondary SECONDARY_USERNAME / SECONDARY_PASSWORD
    Sessions are clustered, so the session table is exercised as well.
    """
    admin_store, session_store = _make_test_stores(f"api_{request.module.__name__}")
    service = AdminService(admin_store)
    service.create_admin(PRIMARY_USERNAME, "primary@example.com", PRIMARY_PASSWORD)
    service.create_admin(SECONDARY_USERNAME, "secondary@example.com", SECONDARY_PASSWORD)

    app.router.lifespan_context = _patch_lifespan(make_settings(cluster_sessions=True), admin_store, session_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    session_store.close()
    admin_store.close()


@pytest.fixture(scope="module")
def setup_client(request: pytest.FixtureRequest) -> Generator[TestClient, None, None]:
    """Yield a TestClient for an installation with no admin of any kind.

    follow_redirects=False so tests can assert on the setup redirect itself.
    """
    admin_store = AdminStore(db_url=shared_memory_url(f"test_admingate_setup_{request.module.__name__}"))
    cfg = make_settings(admin_username="", admin_password="", admin_api_token="")

    app.router.lifespan_context = _patch_lifespan(cfg, admin_store, None)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client

    admin_store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def admin_store() -> Generator[AdminStore, None, None]:
    """Single-threaded store on a private in-memory database."""
    store = AdminStore(db_url="sqlite:///:memory:")
    yield store
    store.close()
