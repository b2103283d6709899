"""
Shared fixtures for the sync engine tests.

Every component takes its clock and sleep as arguments, so nothing here
waits for real time to pass.
"""

import pytest

from slimcal_sync.config import SyncSettings
from slimcal_sync.connectivity import ConnectivityMonitor
from slimcal_sync.events import EventEmitter
from slimcal_sync.models import AuthUser
from slimcal_sync.remote import InMemoryRemoteStore
from slimcal_sync.storage import MemoryStorage


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def user():
    return AuthUser(id="user-1", email="one@example.com")


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the developer's environment and .env file."""
    return SyncSettings(
        _env_file=None,
        cache_dir=tmp_path,
        remote_url="http://remote.test/rest/v1",
        remote_api_key="anon-key",
    )


@pytest.fixture
def recorded_events(events):
    """List that collects every event emitted on ``events``."""
    seen = []
    events.subscribe(seen.append)
    return seen
