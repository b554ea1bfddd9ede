"""Shared fixtures: a temp SQLite repository, an in-memory bus double and
the three core services wired the way main.py wires them."""

import pytest
import pytest_asyncio

from room_monitor.services.broadcaster import ConnectionRegistry
from room_monitor.services.commands import CommandCoordinator
from room_monitor.services.ingestion import IngestionRouter
from room_monitor.storage.sqlite_repo import SQLiteRepository


class FakeBus:
    def __init__(self, connected: bool = True):
        self.connected = connected
        self.published = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    def publish(self, topic: str, payload: str) -> bool:
        if not self.connected:
            return False
        self.published.append((topic, payload))
        return True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture
async def repo(tmp_path):
    r = SQLiteRepository(str(tmp_path / "room_monitor.db"))
    await r.init()
    return r


@pytest.fixture
def bus():
    return FakeBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def registry(repo):
    reg = ConnectionRegistry(repo, heartbeat_s=3600, queue_size=100)
    yield reg
    reg.close()


@pytest_asyncio.fixture
async def coordinator(bus, repo, registry):
    c = CommandCoordinator(bus, repo, registry, command_timeout_s=5.0)
    yield c
    c.close()


@pytest_asyncio.fixture
async def router(repo, registry, coordinator, clock):
    r = IngestionRouter(repo, registry, coordinator, dedup_window_s=1.5, clock=clock)
    yield r
    await r.stop()


@pytest.fixture
def drain():
    """Return every event currently queued on a viewer connection."""

    async def _drain(conn):
        events = []
        while conn.pending:
            event = await conn.next_event()
            if event is None:
                break
            events.append(event)
        return events

    return _drain
