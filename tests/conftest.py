"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any smsbridge import, so the
settings object is built from them. Values already present in the
environment win.
"""

import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_smsbridge.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest00000000000000000000000000")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-auth-token")
os.environ.setdefault("TWILIO_PHONE_NUMBER", "+15005550006")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from smsbridge.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from smsbridge.completion import CompletionError
from smsbridge.main import app, get_completion_client, get_transport
from smsbridge.storage import Base, SessionLocal, engine, seed_defaults
from smsbridge.transport import SendResult


class FakeTransport:
    """Records sends; numbers in `fail_for` get a provider failure."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, to: str, body: str) -> SendResult:
        if to in self.fail_for:
            return SendResult(ok=False, error="provider status 500")
        self.sent.append((to, body))
        return SendResult(ok=True, sid=f"SM{len(self.sent):032d}")

    def sent_to(self, phone: str) -> list:
        return [body for to, body in self.sent if to == phone]


class FakeCompletion:
    """
    Returns a canned reply, or raises `error` when set.

    With `delay` set the call takes that long, cut short at `timeout` the
    way the HTTP client would.
    """

    def __init__(self, reply: str = "On it!", error: Exception = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = []

    def complete(self, system: str, messages: list, max_tokens: int, timeout: float = None) -> str:
        self.calls.append({
            "system": system,
            "messages": messages,
            "max_tokens": max_tokens,
            "timeout": timeout,
        })
        if self.delay:
            if timeout is not None and timeout < self.delay:
                time.sleep(timeout)
                raise CompletionError("completion API unreachable: ReadTimeout")
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture(scope="function")
def db():
    """Session on a fresh, seeded database."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    seed_defaults(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(transport, completion):
    """Create test client with fresh database and fake collaborators for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_transport] = lambda: transport
    app.dependency_overrides[get_completion_client] = lambda: completion

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
