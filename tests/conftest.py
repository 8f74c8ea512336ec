"""
tests/conftest.py -- Shared test fixtures for SessionGate tests.

This module provides:
  - stores:      UserStore + RefreshTokenStore on an isolated SQLite file
  - signer:      TokenSigner with a fixed test secret
  - service:     AuthService wired to the above (local-password path only)
  - alice:       a local user with a role and a custom claim
  - api_client:  TestClient over the real app with a patched lifespan

Design: tests use a SQLite FILE under tmp_path, not a shared-cache in-memory
database. AuthService runs store calls in worker threads, and the concurrency
tests drive several writers at once; shared-cache memory databases use table
locks that fail immediately instead of honouring the busy timeout.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.credentials import CredentialVerifier
from auth.models import User
from auth.service import AuthService
from auth.store import RefreshTokenStore, UserStore, create_store_engine
from auth.tokens import TokenSigner, hash_password
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
ALICE_PASSWORD = "wonderland-42"

# Rate limits would make test order matter; they are exercised separately.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Store / service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores(tmp_path) -> Generator[tuple[UserStore, RefreshTokenStore], None, None]:
    engine = create_store_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield UserStore(engine=engine), RefreshTokenStore(engine=engine)
    engine.dispose()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(TEST_SECRET)


@pytest.fixture
def alice(stores) -> User:
    users, _ = stores
    user = User(username="alice", email="alice@example.com", hashed_password=hash_password(ALICE_PASSWORD))
    user.id = users.create_user(user)
    users.add_role(user.id, "admin")
    users.add_claim(user.id, "department", "engineering")
    return user


@pytest.fixture
def service(stores, signer) -> AuthService:
    users, tokens = stores
    return AuthService(users, tokens, signer, CredentialVerifier())


def make_test_settings(db_path, **overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, "database_url": f"sqlite:///{db_path}"}
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, users: UserStore, tokens: RefreshTokenStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see an
    isolated test DB rather than the production database. No directory client
    is configured, so every login takes the local-password path.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        signer = TokenSigner.from_settings(settings)
        app.state.settings = settings
        app.state.user_store = users
        app.state.refresh_store = tokens
        app.state.directory = None
        app.state.token_signer = signer
        app.state.auth_service = AuthService.from_settings(
            settings, users=users, tokens=tokens, verifier=CredentialVerifier(), signer=signer
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(tmp_path, alice, stores) -> Generator[tuple[TestClient, User], None, None]:
    """Yield (client, alice) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real middleware and route handlers against an isolated database.
    """
    users, tokens = stores
    settings = make_test_settings(tmp_path / "auth.db")
    app.router.lifespan_context = _patch_lifespan(settings, users, tokens)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, alice


def login(client: TestClient, email: str = "alice@example.com", password: str = ALICE_PASSWORD) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()
