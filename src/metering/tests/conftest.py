"""Shared fixtures and fake collaborators for sync engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.metering.base import (
    Channel,
    Customer,
    Device,
    Readings,
    ReadingsSink,
    SinkError,
    UsageSource,
)
from src.metering.config_loader import SyncConfig, load_sync_config

# Canonical test instants
T0 = datetime(2026, 2, 23, 0, 0, 0, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)
EPS = timedelta(milliseconds=1)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class FakeClock:
    """Settable clock passed wherever the engine asks for "now"."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class ScriptedSource(UsageSource):
    """UsageSource that replays scripted responses and records every request.

    Each script entry is either a ``(start, end)`` tuple (``end`` may be
    None for "no data") or an exception instance to raise.
    """

    def __init__(self, customer: Customer | None = None, maintenance: bool = False) -> None:
        self.customer = customer
        self.maintenance = maintenance
        self.scripts: dict[Channel, list] = {}
        self.requests: list[tuple[Channel, datetime, datetime]] = []

    def script(self, channel: Channel, *responses) -> None:
        self.scripts.setdefault(channel, []).extend(responses)

    async def get_customer(self, email: str | None = None) -> Customer:
        assert self.customer is not None
        return self.customer

    async def get_readings(self, channel: Channel, start: datetime, end: datetime) -> Readings:
        self.requests.append((channel, start, end))
        queue = self.scripts.get(channel) or []
        if not queue:
            return Readings(channel=channel, start=start, end=None)
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        r_start, r_end = response
        return Readings(channel=channel, start=r_start, end=r_end, usage=[0.001, 0.002])

    async def is_down_for_maintenance(self) -> bool:
        return self.maintenance

    def windows(self, channel: Channel) -> list[tuple[datetime, datetime]]:
        return [(s, e) for c, s, e in self.requests if c == channel]


class RecordingSink(ReadingsSink):
    """In-memory sink that records saves, flushes, and seeded history."""

    def __init__(self, history: dict[Channel, datetime] | None = None) -> None:
        self.history = history or {}
        self.buffer: list[Readings] = []
        self.flushed: list[Readings] = []
        self.flush_calls = 0
        self.fail_flushes = 0
        self.load_calls: list[Channel] = []

    async def load(self, channel: Channel) -> Readings | None:
        self.load_calls.append(channel)
        if channel not in self.history:
            return None
        last = self.history[channel]
        return Readings(channel=channel, start=last, end=last)

    def save(self, readings: Readings) -> None:
        self.buffer.append(readings)

    async def write_to_db(self) -> int:
        self.flush_calls += 1
        if self.fail_flushes:
            self.fail_flushes -= 1
            raise SinkError("influx unavailable")
        batches, self.buffer = self.buffer, []
        self.flushed.extend(batches)
        return len(batches)

    @property
    def writes_count(self) -> int:
        return len(self.flushed)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real bundled sync config for tests."""
    return load_sync_config()


@pytest.fixture
def channel() -> Channel:
    return Channel(device_gid=1001, channel_num="1,2,3", name="Main")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0 + 3 * HOUR)


@pytest.fixture
def customer() -> Customer:
    """A customer with one root device, one attached device, and one nested below that."""
    nested = Device(device_gid=3003, channels=[Channel(3003, "1")])
    attached = Device(
        device_gid=2002,
        channels=[Channel(2002, "1"), Channel(2002, "2")],
        devices=[nested],
    )
    root = Device(
        device_gid=1001,
        channels=[Channel(1001, "1,2,3", name="Main")],
        devices=[attached],
    )
    return Customer(customer_gid=42, email="user@example.com", devices=[root])
