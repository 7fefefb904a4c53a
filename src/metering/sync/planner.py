"""Adaptive window planner for one channel.

Drains the backlog between a channel's watermark and "now" by requesting
successive contiguous windows from the upstream API.  The first request
spans the whole backlog; each following request has the same duration as
the span the provider actually returned last time, so the window shrinks
to whatever granularity the provider serves near real time.

A pass over one channel ends when:
    - the window reaches "now" (caught up),
    - the provider returns no data (``end`` is None), or
    - the request fails (the watermark is left where it was).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.metering.base import (
    Channel,
    ReadingsSink,
    UpstreamError,
    UsageSource,
    utcnow,
)
from src.metering.sync.watermarks import WatermarkStore

logger = logging.getLogger("emporia.metering.sync.planner")


class DrainStatus(str, enum.Enum):
    CAUGHT_UP = "caught_up"
    NO_DATA = "no_data"
    FAILED = "failed"


@dataclass
class DrainResult:
    """Outcome of one pass over a single channel.

    Attributes:
        channel:   The channel processed.
        status:    Why the pass stopped.
        batches:   Number of Readings batches forwarded to the sink.
        watermark: Watermark after the pass.
        error:     Error message if status == FAILED.
    """

    channel: Channel
    status: DrainStatus
    batches: int
    watermark: datetime
    error: str | None = None


class WindowPlanner:
    """Fetch contiguous, self-sizing windows for a channel and forward them.

    Usage::

        planner = WindowPlanner(client, watermarks, sink=influx)
        result = await planner.drain(channel)
    """

    def __init__(
        self,
        source: UsageSource,
        watermarks: WatermarkStore,
        sink: ReadingsSink | None = None,
        end_offset: timedelta = timedelta(milliseconds=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the planner.

        Args:
            source:     Upstream client used for every window request.
            watermarks: Store holding each channel's last synced instant.
            sink:       Destination for fetched batches (None = fetch only).
            end_offset: Gap kept between a window's end and "now".
            clock:      Source of the current time.
        """
        self._source = source
        self._watermarks = watermarks
        self._sink = sink
        self._end_offset = end_offset
        self._clock = clock

    async def drain(self, channel: Channel, now: datetime | None = None) -> DrainResult:
        """Catch ``channel`` up from its watermark towards ``now``.

        Args:
            channel: Channel to sync.
            now:     Upper bound for this pass (defaults to the clock).

        Returns:
            DrainResult describing where and why the pass stopped.
        """
        now = now or self._clock()
        start = self._watermarks.get_or_default(channel)
        cursor_end = now - self._end_offset
        batches = 0

        while cursor_end < now:
            logger.debug("channel: %s %s - %s", channel, start, cursor_end)
            try:
                readings = await self._source.get_readings(channel, start, cursor_end)
            except UpstreamError as exc:
                logger.warning(
                    "Fetch failed for %s (%s - %s): %s", channel, start, cursor_end, exc
                )
                return DrainResult(
                    channel=channel,
                    status=DrainStatus.FAILED,
                    batches=batches,
                    watermark=start,
                    error=str(exc),
                )

            if readings.end is None:
                logger.debug("No data for %s after %s", channel, start)
                return DrainResult(
                    channel=channel,
                    status=DrainStatus.NO_DATA,
                    batches=batches,
                    watermark=start,
                )

            if self._sink is not None:
                self._sink.save(readings)
            batches += 1

            span = readings.span
            start = self._watermarks.set(channel, readings.end)
            cursor_end = start + span

            if span <= timedelta(0):
                # A zero-length window would be re-requested forever
                logger.debug("Empty span from provider for %s at %s", channel, start)
                status = (
                    DrainStatus.CAUGHT_UP
                    if start >= now - self._end_offset
                    else DrainStatus.NO_DATA
                )
                return DrainResult(
                    channel=channel, status=status, batches=batches, watermark=start
                )

        return DrainResult(
            channel=channel,
            status=DrainStatus.CAUGHT_UP,
            batches=batches,
            watermark=start,
        )
