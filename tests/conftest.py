"""
Test configuration and fixtures
"""
import os
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport

# Keep the app off Redis during tests
os.environ['PUSH_ENABLED'] = 'false'
os.environ['PRESENCE_BACKEND'] = 'memory'
os.environ['MEMBERSHIP_BACKEND'] = 'static'
os.environ['LOG_LEVEL'] = 'WARNING'

from app import app
from dependencies import get_relay
from services.broadcaster import DualTransportBroadcaster
from services.channels import NotificationChannel
from services.membership import StaticMembershipDirectory
from services.presence import InMemoryPresenceStore
from services.relay import SignalRelay
from services.signal_buffer import InMemorySignalBuffer

PROJECT_ID = "proj-1"
MEMBERS = ["alice", "bob", "X", "Y", "a1", "b2"]


class FakeClock:
    """Millisecond clock that advances one tick per reading unless frozen."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value

    def advance(self, ms: int):
        self.now += ms


class RecordingChannel(NotificationChannel):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.triggered = []

    def trigger(self, channel, event, payload):
        if self.fail:
            raise ConnectionError("push provider unreachable")
        self.triggered.append((channel, event, payload))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def presence(clock) -> InMemoryPresenceStore:
    return InMemoryPresenceStore(stale_after_ms=0, clock=clock)


@pytest.fixture
def buffer() -> InMemorySignalBuffer:
    return InMemorySignalBuffer(capacity=100)


@pytest.fixture
def push_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def membership() -> StaticMembershipDirectory:
    return StaticMembershipDirectory({PROJECT_ID: MEMBERS})


@pytest.fixture
def relay(presence, buffer, push_channel, membership, clock) -> SignalRelay:
    return SignalRelay(presence, DualTransportBroadcaster(buffer, push_channel), membership, clock=clock)


@pytest.fixture
async def client(relay: SignalRelay) -> AsyncGenerator[AsyncClient, None]:
    """Create test client wired to the in-process relay"""
    app.dependency_overrides[get_relay] = lambda: relay

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user_id: str, user_name: str = None) -> dict:
    headers = {'X-User-Id': user_id}
    if user_name:
        headers['X-User-Name'] = user_name
    return headers
