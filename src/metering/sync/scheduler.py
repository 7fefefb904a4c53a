"""Polling loop that keeps every channel of a customer in sync.

Two phases:
1. Bootstrap (once): seed each channel's watermark from the sink's history
2. Steady state (until stopped): for every device, attached devices included,
   drain every channel through the window planner, flush the sink, then
   sleep for the poll interval

Channels are processed strictly one after another.  The inter-cycle sleep
is the only suspension point and is cut short by the stop event, after
which the sink is flushed one last time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.metering.base import Customer, ReadingsSink, UsageSource, utcnow
from src.metering.sync.planner import DrainResult, DrainStatus, WindowPlanner
from src.metering.sync.watermarks import WatermarkStore

logger = logging.getLogger("emporia.metering.sync.scheduler")

DEFAULT_POLL_INTERVAL = timedelta(minutes=5)


@dataclass
class CycleResult:
    """Result of one steady-state cycle.

    Attributes:
        started_at: UTC time the cycle began.
        drains:     Per-channel planner results, in processing order.
        flushed:    Points written by the end-of-cycle flush.
        skipped:    True if the cycle was skipped (provider maintenance).
        errors:     Error messages collected during the cycle.
    """

    started_at: datetime
    drains: list[DrainResult] = field(default_factory=list)
    flushed: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def batches(self) -> int:
        return sum(d.batches for d in self.drains)

    @property
    def failed(self) -> list[DrainResult]:
        return [d for d in self.drains if d.status == DrainStatus.FAILED]


class SyncLoop:
    """Drive the window planner across a customer's channels forever.

    Usage::

        loop = SyncLoop(customer, client, sink=influx)
        stop = asyncio.Event()
        await loop.run(stop)
    """

    def __init__(
        self,
        customer: Customer,
        source: UsageSource,
        sink: ReadingsSink | None = None,
        poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
        backfill_horizon: timedelta = timedelta(hours=12),
        end_offset: timedelta = timedelta(milliseconds=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the loop.

        Args:
            customer:         Customer whose device tree is synced.
            source:           Upstream client.
            sink:             Destination store (None disables persistence).
            poll_interval:    Sleep between cycles.
            backfill_horizon: Look-back for channels with no history.
            end_offset:       Gap kept between a window's end and "now".
            clock:            Source of the current time.
        """
        self._customer = customer
        self._source = source
        self._sink = sink
        self._poll_interval = poll_interval
        self._clock = clock
        self.watermarks = WatermarkStore(
            backfill_horizon=backfill_horizon, end_offset=end_offset, clock=clock
        )
        self._planner = WindowPlanner(
            source, self.watermarks, sink=sink, end_offset=end_offset, clock=clock
        )

    async def bootstrap(self) -> int:
        """Seed watermarks for every known channel from the sink.

        Does not fetch from upstream.  A no-op without a sink.

        Returns:
            Number of channels seeded.
        """
        if self._sink is None:
            return 0

        seeded = 0
        for channel in self._customer.iter_channels():
            await self.watermarks.bootstrap(channel, self._sink)
            seeded += 1
        logger.info("Bootstrapped watermarks for %d channels", seeded)
        return seeded

    async def run_cycle(self) -> CycleResult:
        """Run one steady-state pass over every channel and flush the sink."""
        result = CycleResult(started_at=self._clock())

        if await self._source.is_down_for_maintenance():
            logger.warning("Upstream is down for maintenance, skipping cycle")
            result.skipped = True
            return result

        for device in self._customer.iter_devices():
            for channel in device.channels:
                drain = await self._planner.drain(channel)
                result.drains.append(drain)
                if drain.error:
                    result.errors.append(f"{channel}: {drain.error}")

        result.flushed = await self._flush(result.errors)

        logger.info(
            "Cycle complete: %d channels, %d batches, %d failed, %d points written",
            len(result.drains),
            result.batches,
            len(result.failed),
            result.flushed,
        )
        if self._sink is not None:
            logger.info("current write count: %d", self._sink.writes_count)
        return result

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Bootstrap, then cycle until ``stop_event`` is set.

        The sink is flushed exactly once more on the way out, whether the
        loop ended through the stop event or through cancellation.
        """
        stop_event = stop_event or asyncio.Event()

        if not self._customer.devices:
            logger.warning("Customer %s has no devices!", self._customer)
            return

        await self.bootstrap()
        try:
            while not stop_event.is_set():
                await self.run_cycle()
                if await self._sleep(stop_event):
                    logger.info("Stop requested, leaving sync loop")
                    break
        finally:
            await self._flush([])

    async def _sleep(self, stop_event: asyncio.Event) -> bool:
        """Wait for the poll interval; return True if woken by the stop event."""
        try:
            await asyncio.wait_for(
                stop_event.wait(), timeout=self._poll_interval.total_seconds()
            )
        except asyncio.TimeoutError:
            return False
        return True

    async def _flush(self, errors: list[str]) -> int:
        if self._sink is None:
            return 0
        try:
            return await self._sink.write_to_db()
        except Exception as exc:
            logger.error("Sink flush failed, data stays buffered: %s", exc)
            errors.append(f"flush: {exc}")
            return 0
