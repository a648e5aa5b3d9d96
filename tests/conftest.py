"""
tests/conftest.py -- Shared test fixtures for credvault.

This module provides:
  - store / service: a CredentialStore + AuthService on a file in tmp_path
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient with a bootstrapped admin ("admin" / ADMIN_PASSWORD)
  - admin_token: bearer token for the bootstrapped admin

Design: the environment must be populated before any core/auth/api import so
get_settings() validates successfully at import time (api.main reads settings
when the module loads). PASSWORD_ITERATIONS is dropped to the 10,000 floor
to keep PBKDF2 fast; everything else runs the production code paths.
"""

from __future__ import annotations

import asyncio
import os
import secrets
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("MASTER_KEY", "test-master-key-0123456789abcdef0123456789")
os.environ.setdefault("PASSWORD_ITERATIONS", "10000")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import CredentialStore

ITERATIONS = 10_000
ADMIN_PASSWORD = "adminpass1"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def master_key() -> bytes:
    """A raw 256-bit key. Tests skip derive_master_key() for speed."""
    return secrets.token_bytes(32)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "data" / "credentials.enc"


@pytest.fixture
def store(store_path, master_key) -> CredentialStore:
    """Empty, loaded CredentialStore backed by a file under tmp_path."""
    s = CredentialStore(store_path, master_key, iterations=ITERATIONS)
    s.load()
    return s


@pytest.fixture
def service(store) -> AuthService:
    return AuthService(store)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService, sessions: SessionStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.sessions = sessions
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(service) -> Generator[tuple[TestClient, AuthService, SessionStore], None, None]:
    """Yield (client, service, sessions) with an admin account already present.

    Each test gets a fresh credential file and session store, so accounts
    created by one test never leak into another.
    """
    service.bootstrap("admin", ADMIN_PASSWORD)
    sessions = SessionStore(secrets.token_hex(32))

    app.router.lifespan_context = _patch_lifespan(service, sessions)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, service, sessions


@pytest.fixture
def admin_token(api_client) -> str:
    """Bearer token for the bootstrapped admin. The login cookie is dropped."""
    client, _service, _sessions = api_client
    resp = client.post("/api/v1/auth/login", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()["token"]


@pytest.fixture
def user_factory(service):
    """Create accounts straight through the service (bypassing HTTP)."""

    def _make(username: str, password: str = "secret1", role: Role = Role.user):
        return service.create_user(username, password, role)

    return _make
