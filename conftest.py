# Shared fixtures: deterministic clocks, a scripted telemetry transport and sessions

import asyncio
import json
from datetime import datetime, timedelta

import pytest

from fleettrack.config import TrackingConfig
from fleettrack.errors import TransportError
from fleettrack.session import TrackingSession

# Three points on the equator, one degree of longitude apart
EQUATOR_MISSION = [
    {'lat': 0.0, 'lng': 0.0},
    {'lat': 0.0, 'lng': 1.0},
    {'lat': 0.0, 'lng': 2.0},
]

# Short loop in San Francisco, points a few hundred metres apart
CITY_MISSION = [
    {'lat': 37.7749, 'lng': -122.4194, 'label': 'Launch'},
    {'lat': 37.7790, 'lng': -122.4150, 'label': 'Tower'},
    {'lat': 37.7830, 'lng': -122.4194, 'label': 'Home'},
]


class FakeClock:
    """Monotonic seconds under test control"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeWallClock:
    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeConnection:
    def __init__(self, url: str):
        self.url = url
        self.sent = []
        self.closed = False
        self.queue: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str):
        self.sent.append(text)

    async def messages(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item

    async def close(self):
        self.closed = True

    def push(self, message):
        self.queue.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

    def end(self):
        """Simulate the peer closing the stream"""
        self.queue.put_nowait(None)


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.urls = []
        self.connections = []

    async def open(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.fail:
            raise TransportError(f"connection refused: {url}")
        connection = FakeConnection(url)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


@pytest.fixture
def config():
    config = TrackingConfig()
    config.simulation.autotick = False
    config.simulation.steps_per_segment = 10
    return config


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeWallClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def session(config, transport, fake_clock, wall_clock):
    session = TrackingSession(config, transport=transport, clock=wall_clock, monotonic=fake_clock)
    yield session
    session.shutdown()
