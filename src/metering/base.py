"""Base classes and canonical data models for the Emporia usage sync engine.

The metering hierarchy is Customer → Device (→ attached Devices) → Channel.
Channels are the leaves the sync engine iterates over; ``Readings`` is the
unit of data exchanged between the upstream client, the window planner, and
the sink.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterator


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class UpstreamError(RuntimeError):
    """Raised when the upstream API could not produce a usable response.

    Covers transport failures, non-2xx statuses, and undecodable bodies.
    Distinct from a successful response that carries no data (``end`` is None).
    """


class AuthenticationError(UpstreamError):
    """Raised when upstream credentials cannot be obtained or refreshed."""


class SinkError(RuntimeError):
    """Raised when the sink fails to load history or persist batches."""


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Channel:
    """One meter/circuit feed, keyed by ``(device_gid, channel_num)``.

    Attributes:
        device_gid:         Emporia device identifier.
        channel_num:        Emporia channel string (e.g. "1", "1,2,3" for mains).
        name:               Display name from the app, if set.
        channel_multiplier: Scale factor applied to raw samples.
        channel_type_gid:   Emporia channel type identifier.
    """

    device_gid: int
    channel_num: str
    name: str | None = field(default=None, compare=False)
    channel_multiplier: float = field(default=1.0, compare=False)
    channel_type_gid: int | None = field(default=None, compare=False)

    def __str__(self) -> str:
        label = f"{self.device_gid}/{self.channel_num}"
        return f"{label} ({self.name})" if self.name else label


@dataclass
class Device:
    """A metering device, possibly with attached sub-meters.

    Attributes:
        device_gid:             Emporia device identifier.
        manufacturer_device_id: Hardware serial.
        model:                  Hardware model string.
        firmware:               Firmware version string.
        channels:               Ordered channels on this device.
        devices:                Attached devices (owned by this one).
    """

    device_gid: int
    manufacturer_device_id: str | None = None
    model: str | None = None
    firmware: str | None = None
    channels: list[Channel] = field(default_factory=list)
    devices: list["Device"] = field(default_factory=list)

    def iter_devices(self) -> Iterator["Device"]:
        """Yield this device and every attached device, depth-first."""
        yield self
        for attached in self.devices:
            yield from attached.iter_devices()


@dataclass
class Customer:
    """Root of the device tree.

    Attributes:
        customer_gid: Durable Emporia customer id.
        email:        Account email.
        first_name:   Optional first name.
        last_name:    Optional last name.
        devices:      Root devices, in API order.
    """

    customer_gid: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    devices: list[Device] = field(default_factory=list)

    def iter_devices(self) -> Iterator[Device]:
        """Yield every device reachable from this customer, depth-first."""
        for device in self.devices:
            yield from device.iter_devices()

    def iter_channels(self) -> Iterator[Channel]:
        """Yield every channel of every reachable device."""
        for device in self.iter_devices():
            yield from device.channels

    def __str__(self) -> str:
        return f"{self.email} ({self.customer_gid})"


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------

# Emporia scale codes → sample spacing
SCALE_INTERVALS: dict[str, timedelta] = {
    "1S": timedelta(seconds=1),
    "1MIN": timedelta(minutes=1),
    "15MIN": timedelta(minutes=15),
    "1H": timedelta(hours=1),
}


@dataclass
class Readings:
    """A batch of usage samples for one channel over ``[start, end]``.

    ``end`` is None exactly when the provider had no data for the requested
    window; it may also be earlier than the requested end.

    Attributes:
        channel: The channel these samples belong to.
        start:   First instant of the batch (UTC).
        end:     Last instant actually covered, or None when empty.
        scale:   Emporia scale code of the samples.
        unit:    Emporia unit of the samples.
        usage:   Samples in time order; None marks a gap.
    """

    channel: Channel
    start: datetime
    end: datetime | None
    scale: str = "1S"
    unit: str = "KilowattHours"
    usage: list[float | None] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.end is not None

    @property
    def span(self) -> timedelta:
        """Duration the provider actually satisfied (zero when empty)."""
        if self.end is None:
            return timedelta(0)
        return self.end - self.start

    @property
    def sample_interval(self) -> timedelta:
        return SCALE_INTERVALS.get(self.scale, timedelta(seconds=1))

    def points(self) -> Iterator[tuple[datetime, float]]:
        """Yield ``(timestamp, value)`` for every non-null sample."""
        step = self.sample_interval
        for i, value in enumerate(self.usage):
            if value is None:
                continue
            yield self.start + i * step, value


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class UsageSource(ABC):
    """Upstream API surface the sync engine depends on."""

    @abstractmethod
    async def get_customer(self, email: str | None = None) -> Customer:
        """Resolve a customer by email and fetch its full device hierarchy.

        Raises:
            UpstreamError: If either request fails.
        """

    @abstractmethod
    async def get_readings(
        self, channel: Channel, start: datetime, end: datetime
    ) -> Readings:
        """Fetch usage for ``channel`` over ``[start, end]`` in one request.

        The returned ``end`` may be earlier than requested, or None when the
        provider has no data yet.

        Raises:
            UpstreamError: On transport, auth, or decoding failure.
        """

    async def is_down_for_maintenance(self) -> bool:
        """Return True if the provider reports scheduled maintenance."""
        return False


class ReadingsSink(ABC):
    """Downstream time-series store."""

    @abstractmethod
    async def load(self, channel: Channel) -> Readings | None:
        """Return the most recently persisted reading, or None if no history."""

    @abstractmethod
    def save(self, readings: Readings) -> None:
        """Buffer a batch in memory; never blocks on I/O."""

    @abstractmethod
    async def write_to_db(self) -> int:
        """Persist buffered batches and return the number of points written.

        Raises:
            SinkError: If the write fails; batches stay buffered.
        """

    @property
    def writes_count(self) -> int:
        return 0
