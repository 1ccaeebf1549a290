"""
tests/conftest.py -- Shared fixtures for MemberAuth tests.

This module provides:
  - identity_store / session_store: isolated in-memory stores for unit tests
  - member: a seeded account (a@x.com / "right-password", first name Alice)
  - session: a SessionHandle on a fresh session id
  - client: TestClient over the full ASGI app (API + web routes) with a
    patched lifespan wiring isolated stores and a recording notifier

Design: the ASGI fixture uses named shared-memory SQLite URIs (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import wire_services
from asgi import app
from auth.models import Principal
from auth.session import SessionStateStore, new_session_id
from auth.store import IdentityStore
from auth.tokens import hash_password

MEMBER_EMAIL = "a@x.com"
MEMBER_PASSWORD = "right-password"


class RecordingNotifier:
    """Notifier double that keeps every send() call."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Principal, dict]] = []

    def send(self, template: str, principal: Principal, context: dict) -> None:
        self.sent.append((template, principal, context))


def seed_member(store: IdentityStore, **overrides) -> Principal:
    fields = {
        "identifier": MEMBER_EMAIL,
        "first_name": "Alice",
        "surname": "Example",
        "hashed_password": hash_password(MEMBER_PASSWORD),
    }
    fields.update(overrides)
    principal = Principal(**fields)
    principal.id = store.create_member(principal)
    return principal


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def identity_store() -> Generator[IdentityStore, None, None]:
    store = IdentityStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def session_store() -> Generator[SessionStateStore, None, None]:
    store = SessionStateStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def member(identity_store: IdentityStore) -> Principal:
    return seed_member(identity_store)


@pytest.fixture
def session(session_store: SessionStateStore):
    return session_store.handle(new_session_id())


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ---------------------------------------------------------------------------
# ASGI fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(identity_store: IdentityStore, session_store: SessionStateStore, notifier: RecordingNotifier):
    """Return a lifespan that wires test stores into app.state.

    The purge_task is a long-sleeping coroutine so shutdown's .cancel() has a
    real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, identity_store, session_store, notifier)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def client() -> Generator[tuple[TestClient, IdentityStore, RecordingNotifier], None, None]:
    """Yield (client, identity_store, notifier) with one seeded member.

    follow_redirects=False so web tests can assert on Location headers.
    base_url uses localhost to satisfy TrustedHostMiddleware.
    """
    suffix = uuid.uuid4().hex
    identity_store = IdentityStore(f"sqlite:///file:test_identity_{suffix}?mode=memory&cache=shared&uri=true")
    session_store = SessionStateStore(f"sqlite:///file:test_session_{suffix}?mode=memory&cache=shared&uri=true")
    notifier = RecordingNotifier()
    seed_member(identity_store)

    app.router.lifespan_context = _patch_lifespan(identity_store, session_store, notifier)
    limiter.reset()

    with TestClient(
        app, base_url="http://localhost", follow_redirects=False, raise_server_exceptions=True
    ) as test_client:
        yield test_client, identity_store, notifier

    session_store.close()
    identity_store.close()
