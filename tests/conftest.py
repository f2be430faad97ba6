"""
tests/conftest.py -- Shared test fixtures for Bastion tests.

This module provides:
  - make_stores(): creates an isolated SQLite file DB with both repositories
  - add_principal(): inserts a principal with an optional password
  - bearer(): Authorization header for a token
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - store / reset_store: per-test repositories for unit tests
  - api_client: TestClient plus seeded admin, moderator and users

Design: every test gets its own SQLite file under pytest's tmp_path. A file
DB (not :memory:, not a shared-cache memory URI) is required because
TestClient runs route handlers in a thread pool while the presence tracker
writes from worker threads. Plain :memory: DBs are per-connection, and
shared-cache memory DBs fail concurrent writers with "table is locked"
instead of waiting; a WAL file DB serializes them.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.audit import AuditLog
from auth.models import Principal
from auth.notify import EmailNotifier
from auth.presence import PresenceTracker
from auth.store import PrincipalStore, ResetTokenStore
from auth.tokens import hash_password, issue_token
from core.config import get_settings

ADMIN_PASSWORD = "Adm1n!pass"
MOD_PASSWORD = "M0d!password"
USER_PASSWORD = "Us3r!password"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_stores(db_dir: Path) -> tuple[PrincipalStore, ResetTokenStore]:
    """Create isolated SQLite stores in db_dir.

    Args:
        db_dir: A per-test (or per-module) temporary directory, so tests
                never share state.
    """
    store = PrincipalStore(db_url=f"sqlite:///{db_dir / 'bastion_test.db'}")
    return store, ResetTokenStore(store.engine)


def add_principal(
    store: PrincipalStore,
    username: str,
    role: str = "user",
    password: Optional[str] = None,
    **fields,
) -> Principal:
    """Insert a principal directly through the store and return the stored record.

    With a password the principal is past its first login; without one it is
    whatever **fields say.
    """
    if password is not None:
        fields.setdefault("is_first_login", False)
    principal = Principal(
        username=username,
        full_name=fields.pop("full_name", username.title()),
        role=role,
        hashed_password=hash_password(password) if password is not None else None,
        **fields,
    )
    return store.get_by_id(store.create_principal(principal))


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class RecordingNotifier(EmailNotifier):
    """EmailNotifier that keeps messages in memory instead of sending them."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__(get_settings())
        self.sent: list[tuple[str, str, str]] = []
        self.fail = fail

    def send_password_reset(self, address: str, username: str, token: str) -> None:
        if self.fail:
            raise OSError("SMTP unavailable")
        self.sent.append((address, username, token))


@pytest.fixture
def store(tmp_path: Path) -> Generator[PrincipalStore, None, None]:
    s, _ = make_stores(tmp_path)
    yield s
    s.close()


@pytest.fixture
def reset_store(store: PrincipalStore) -> ResetTokenStore:
    return ResetTokenStore(store.engine)


@pytest.fixture
def audit(store: PrincipalStore) -> AuditLog:
    return AuditLog(store.engine)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: PrincipalStore, reset_store: ResetTokenStore, notifier: EmailNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the production database. The presence
    tracker is real; its sweep interval is long enough never to fire.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.principal_store = store
        app.state.reset_store = reset_store
        app.state.audit = AuditLog(store.engine)
        app.state.notifier = notifier
        app.state.presence = PresenceTracker(store, queue_size=100, sweep_seconds=99999)
        app.state.presence.start()
        yield
        await app.state.presence.stop()

    return test_lifespan


@dataclass
class ApiContext:
    """Everything an API test needs: the client, stores and the seeded principals."""

    client: TestClient
    store: PrincipalStore
    reset_store: ResetTokenStore
    notifier: RecordingNotifier
    admin: Principal
    moderator: Principal
    alice: Principal
    bob: Principal

    def token_for(self, principal_id: int) -> str:
        """Issue a token for the principal's current epoch."""
        return issue_token(self.store.get_by_id(principal_id))

    def headers_for(self, principal_id: int) -> dict[str, str]:
        return bearer(self.token_for(principal_id))


@pytest.fixture(scope="module")
def api_client(tmp_path_factory: pytest.TempPathFactory) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    Seeded principals:
      - admin       role=admin
      - moderator   role=moderator, accessible_users=[alice]
      - alice       role=user, with an email on file
      - bob         role=user, not on the moderator's list

    Rate limiting is disabled so tests can log in freely; the rate-limit test
    re-enables it locally.
    """
    store, reset_store = make_stores(tmp_path_factory.mktemp("api"))
    notifier = RecordingNotifier()

    admin = add_principal(store, "admin", "admin", ADMIN_PASSWORD)
    alice = add_principal(store, "alice", "user", USER_PASSWORD, emails=["alice@example.com"])
    bob = add_principal(store, "bob", "user", USER_PASSWORD)
    moderator = add_principal(store, "moderator", "moderator", MOD_PASSWORD, accessible_users=[alice.id])

    app.router.lifespan_context = _patch_lifespan(store, reset_store, notifier)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            store=store,
            reset_store=reset_store,
            notifier=notifier,
            admin=admin,
            moderator=moderator,
            alice=alice,
            bob=bob,
        )

    limiter.enabled = True
    store.close()
