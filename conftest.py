"""
Pytest configuration and shared fixtures.

Environment variables are set before any app import so the module-level app
and the cached settings never touch a real database or Twilio account.
"""

import os

os.environ.setdefault("DATABASE_URL", "memory://")
os.environ.setdefault("TWILIO_NUMBER", "+14155550100")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from wa_inbox.config import Settings, get_settings
get_settings.cache_clear()

from wa_inbox.errors import TransportError
from wa_inbox.live import LiveUpdateBus
from wa_inbox.main import create_app
from wa_inbox.pipelines import Inbox
from wa_inbox.store import InMemoryDocumentStore
from wa_inbox.transport import SentMessage


class FakeTransport:
    """Stands in for TwilioTransport; records every send."""

    def __init__(self, status: str = "queued", fail: bool = False):
        self.status = status
        self.fail = fail
        self.sent = []

    @property
    def configured(self) -> bool:
        return True

    async def send(self, from_: str, to: str, body: str) -> SentMessage:
        if self.fail:
            raise TransportError("Twilio API error", {"code": 21211})
        self.sent.append({"from": from_, "to": to, "body": body})
        return SentMessage(sid=f"SM{len(self.sent):032d}", status=self.status)


class BroadcastRecorder:
    """Wraps a bus so tests can see every event broadcast through it."""

    def __init__(self, bus: LiveUpdateBus):
        self.events = []
        self._broadcast = bus.broadcast
        bus.broadcast = self

    def __call__(self, event):
        self.events.append(event)
        return self._broadcast(event)

    def of_type(self, event_type: str):
        return [e for e in self.events if e and e.get("type") == event_type]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="memory://",
        TWILIO_SID="AC00000000000000000000000000000000",
        TWILIO_AUTH="test-auth-token",
        TWILIO_NUMBER="+14155550100",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def inbox(store, transport) -> Inbox:
    """Core components without the HTTP layer."""
    return Inbox(store, LiveUpdateBus(), transport, sender_number="+14155550100")


@pytest.fixture
def client(settings, store, transport):
    """Test client over a fresh in-memory store."""
    app = create_app(settings=settings, store=store, transport=transport)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def events(client) -> BroadcastRecorder:
    return BroadcastRecorder(client.app.state.bus)
