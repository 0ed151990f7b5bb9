"""
tests/conftest.py -- Shared test fixtures for AuthKeep unit and integration tests.

This module provides:
  - store / codec / policy / clock / mailbox: building blocks for unit tests
  - actions / sessions / gate / accounts: services wired around them
  - make_user: insert a user in a given state without going through register()
  - api_client: TestClient on the real app with a patched lifespan

Design: unit tests get a file-backed SQLite store under tmp_path so each test
starts from an empty schema. The API fixture uses a named shared-memory SQLite
URI (file:name?mode=memory&cache=shared&uri=true) because TestClient runs sync
route handlers in a thread pool; plain :memory: DBs are per-connection and
would present a blank schema to each worker thread.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, attach_services
from auth.accounts import AccountService
from auth.actions import ActionTokenService
from auth.errors import MailTransientFailure
from auth.gate import AuthGate
from auth.models import AccountState, TokenPurpose, User
from auth.passwords import PasswordPolicy, hash_password
from auth.services import build_services
from auth.sessions import SessionService
from auth.store import SqlCredentialStore
from auth.tokens import TokenCodec
from core.config import get_settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
TEST_PASSWORD = "Correct-horse-9"
FRONTEND = "https://app.example.com"
REFRESH_TTL = 14 * 24 * 3600

# Rate limits are covered by slowapi itself; with them on, a module's worth of
# logins from the same client address would start returning 429.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SentMail:
    to_email: str
    purpose: TokenPurpose
    link: str

    @property
    def token(self) -> str:
        return parse_qs(urlsplit(self.link).query)["token"][0]


class RecordingMailSender:
    """MailSender that keeps every message in memory. Set fail=True to simulate an outage."""

    def __init__(self) -> None:
        self.sent: list[SentMail] = []
        self.fail = False

    def send(self, to_email: str, purpose: TokenPurpose, action_link: str) -> None:
        if self.fail:
            raise MailTransientFailure()
        self.sent.append(SentMail(to_email, purpose, action_link))

    def last(self, to_email: str, purpose: TokenPurpose) -> SentMail:
        for mail in reversed(self.sent):
            if mail.to_email == to_email and mail.purpose is purpose:
                return mail
        raise AssertionError(f"No {purpose.value} mail sent to {to_email}")

    def last_token(self, to_email: str, purpose: TokenPurpose) -> str:
        return self.last(to_email, purpose).token


class FakeClock:
    """Callable clock for services. advance() moves time forward without sleeping."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path) -> Generator[SqlCredentialStore, None, None]:
    s = SqlCredentialStore(f"sqlite:///{tmp_path / 'auth.db'}", timeout_seconds=5)
    yield s
    s.close()


@pytest.fixture
def secret_key() -> str:
    return TEST_SECRET


@pytest.fixture
def password() -> str:
    """The password make_user() gives every user unless told otherwise."""
    return TEST_PASSWORD


@pytest.fixture
def codec(secret_key) -> TokenCodec:
    return TokenCodec(secret_key)


@pytest.fixture
def policy() -> PasswordPolicy:
    return PasswordPolicy()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailbox() -> RecordingMailSender:
    return RecordingMailSender()


@pytest.fixture
def actions(store, codec, mailbox, policy, clock) -> ActionTokenService:
    return ActionTokenService(
        store,
        codec,
        mailbox,
        policy,
        verification_ttl_seconds=24 * 3600,
        reset_ttl_seconds=3600,
        frontend_base_url=FRONTEND,
        clock=clock,
    )


@pytest.fixture
def sessions(store, codec, clock) -> SessionService:
    return SessionService(store, codec, refresh_ttl_seconds=REFRESH_TTL, clock=clock)


@pytest.fixture
def gate(store, codec, clock, sessions) -> AuthGate:
    return AuthGate(store, codec, access_ttl_seconds=900, clock=clock, sessions=sessions)


@pytest.fixture
def accounts(store, actions, policy, clock) -> AccountService:
    return AccountService(store, actions, policy, clock=clock)


@pytest.fixture
def make_user(store):
    """Factory: insert a user directly in the requested state and return it with its id."""

    def _make(email: str, state: AccountState = AccountState.verified, password: str = TEST_PASSWORD) -> User:
        user = User(email=email, hashed_password=hash_password(password), state=state)
        user.id = store.create_user(user)
        return user

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> SqlCredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return SqlCredentialStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: SqlCredentialStore, mailbox: RecordingMailSender):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and the recording mail sender into app.state so
    TestClient routes never touch the configured database or send mail.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, build_services(get_settings(), store=store, mail_sender=mailbox))
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, RecordingMailSender], None, None]:
    """Yield (client, mailbox) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, middleware, and exception handlers. base_url uses
    localhost because TrustedHostMiddleware rejects the default "testserver".
    """
    store = _make_test_store(uuid.uuid4().hex[:8])
    mailbox = RecordingMailSender()
    app.router.lifespan_context = _patch_lifespan(store, mailbox)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, mailbox

    store.close()


@pytest.fixture
def client(api_client) -> TestClient:
    """The module's TestClient with an empty cookie jar.

    Login sets an access_token cookie; clearing it keeps one test's session
    from authenticating the next test's requests.
    """
    c, _ = api_client
    c.cookies.clear()
    return c


@pytest.fixture
def api_mailbox(api_client) -> RecordingMailSender:
    _, mailbox = api_client
    mailbox.fail = False
    return mailbox
