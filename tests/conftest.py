"""
tests/conftest.py -- Shared test fixtures for AuthVault tests.

This module provides:
  - store: a fresh single-connection in-memory CredentialStore per test
  - services: TokenService / TwoFactorService / AuthSessionManager over `store`
  - make_shared_store(): named shared-memory store for TestClient tests
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient over the real app with an isolated database
  - register_and_login(): helper that creates an account and returns its tokens

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
TestClient because sync route handlers run in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

Environment must be set before any auth/core import: get_settings() is cached
on first call. DEBUG=true lets it auto-generate the secrets, BCRYPT_ROUNDS=4
keeps hashing fast, and the rate limiter is switched off because the suite
logs in many times from the same address.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.sessions import AuthSessionManager
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorService
from core.config import get_settings

STRONG_PASSWORD = "Str0ng!Pass"

# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService.from_settings()


@pytest.fixture
def two_factor(store: CredentialStore) -> TwoFactorService:
    return TwoFactorService.from_settings(store)


@pytest.fixture
def sessions(store: CredentialStore, tokens: TokenService, two_factor: TwoFactorService) -> AuthSessionManager:
    return AuthSessionManager.from_settings(store, tokens, two_factor)


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def make_shared_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: appended to the DB name so test modules never share state.
    """
    return CredentialStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state through the same wire_services() the
    real lifespan uses, then swaps the OAuth registry for a mock so no test
    can reach a real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store, get_settings())
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with an isolated database.

    The database is named after the test module, so state persists across the
    tests of one module (module scope) but never leaks into another.
    """
    store = make_shared_store(f"{request.module.__name__}_{uuid.uuid4().hex[:8]}")
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    store.close()


def register_and_login(client: TestClient, email: str, password: str = STRONG_PASSWORD) -> dict:
    """Register `email` and log in. Returns the login response body."""
    resp = client.post("/api/v1/auth/register", json={"email": email, "password": password, "name": "Test User"})
    assert resp.status_code == 201, f"Registration failed: {resp.status_code} {resp.text}"
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, f"Login failed: {resp.status_code} {resp.text}"
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
