"""
tests/conftest.py -- Shared test fixtures for AuthGate unit and integration tests.

This module provides:
  - FrozenClock: injectable clock so tests can step past lockout and expiry windows
  - RecordingEmailSender / RecordingActivitySink: capture the engine's outbound effects
  - store / counters / service: a fresh in-memory AuthStore and AuthService per test
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates the signing keys in dev mode rather than raising ValueError.
BCRYPT_ROUNDS is lowered the same way; cost 12 would make the suite crawl.
ALLOWED_HOSTS adds the TestClient host to the TrustedHostMiddleware list.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

# CRITICAL: Set these before any auth/core import so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RESET_TOKEN_BCRYPT_ROUNDS", "4")
# TestClient sends Host: testserver, which production never accepts.
os.environ.setdefault("ALLOWED_HOSTS", '["localhost", "127.0.0.1", "testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Account, ActivityEvent, ActivityType
from auth.service import AuthService
from auth.store import AuthStore
from cache.counters import CounterStoreError, MemoryCounterStore
from core.clock import utcnow

PASSWORD = "Password1!"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    """Clock that only moves when told to.

    Starts at noon UTC today: inside the usual-hours window, and close enough
    to real time that python-jose accepts the exp claims it produces.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow().replace(hour=12, minute=0, second=0, microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> None:
        self.now += timedelta(seconds=seconds, **kwargs)


@dataclass
class SentEmail:
    kind: str
    email: str
    name: str
    token: str | None = None
    ip: str | None = None


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[SentEmail] = []

    def send_password_reset(self, email: str, name: str, raw_token: str) -> None:
        self.sent.append(SentEmail("reset", email, name, token=raw_token))

    def send_password_change_confirmation(self, email: str, name: str, ip: str | None) -> None:
        self.sent.append(SentEmail("password_changed", email, name, ip=ip))

    def send_email_verification(self, email: str, name: str, raw_token: str) -> None:
        self.sent.append(SentEmail("verification", email, name, token=raw_token))

    def of_kind(self, kind: str) -> list[SentEmail]:
        return [m for m in self.sent if m.kind == kind]

    def last_token(self, kind: str) -> str:
        return self.of_kind(kind)[-1].token


class RecordingActivitySink:
    def __init__(self) -> None:
        self.events: list[ActivityEvent] = []

    def record(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def of_type(self, type_: ActivityType) -> list[ActivityEvent]:
        return [e for e in self.events if e.type == type_]


class BrokenCounterStore:
    """Counter backend that is always unreachable."""

    def hit(self, *args, **kwargs):
        raise CounterStoreError("down")

    def get(self, *args, **kwargs):
        raise CounterStoreError("down")

    def blocked_until(self, *args, **kwargs):
        raise CounterStoreError("down")

    def block(self, *args, **kwargs):
        raise CounterStoreError("down")

    def reset(self, *args, **kwargs):
        raise CounterStoreError("down")

    def cleanup(self, *args, **kwargs):
        raise CounterStoreError("down")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_db_url(label: str) -> str:
    """Unique named shared-memory SQLite URL, so tests never see each other's rows."""
    return f"sqlite:///file:test_{label}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_account(service: AuthService, email: str = "a@x.com", password: str = PASSWORD, **kwargs) -> Account:
    """Create an active account through the service (no verification step)."""
    return service.create_account(email, password, **kwargs)


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- a fresh engine per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(db_url=_memory_db_url("auth"))
    yield s
    s.close()


@pytest.fixture
def counters() -> MemoryCounterStore:
    return MemoryCounterStore()


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def activity() -> RecordingActivitySink:
    return RecordingActivitySink()


@pytest.fixture
def service(store, counters, mailer, activity, clock) -> AuthService:
    return AuthService(store, counters, email_sender=mailer, activity=activity, clock=clock)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    service: AuthService
    mailer: RecordingEmailSender
    counters: MemoryCounterStore


def _patch_lifespan(store: AuthStore, counters: MemoryCounterStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test objects into app.state so TestClient routes see an
    isolated test DB rather than the production database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.counters = counters
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, dependencies and exception handlers. An admin
    account (admin@x.com / PASSWORD) exists before the client starts.
    """
    store = AuthStore(db_url=_memory_db_url("api"))
    counters = MemoryCounterStore()
    mailer = RecordingEmailSender()
    service = AuthService(store, counters, email_sender=mailer)
    service.create_account("admin@x.com", PASSWORD, role="admin", first_name="Admin")

    app.router.lifespan_context = _patch_lifespan(store, counters, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, service=service, mailer=mailer, counters=counters)

    store.close()
