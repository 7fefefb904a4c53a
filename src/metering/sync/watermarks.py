"""Per-channel watermark tracking.

A watermark is the last instant through which a channel's readings are
known to be synced.  The store is owned by the sync loop and passed
explicitly to the window planner; it is never persisted here — on restart
it is rebuilt from the sink's history via ``bootstrap()``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from src.metering.base import Channel, ReadingsSink, utcnow

logger = logging.getLogger("emporia.metering.sync.watermarks")


class WatermarkStore:
    """In-memory map of Channel → last synced instant.

    Watermarks only move forward and never reach "now": ``set`` ignores
    older instants and clamps to ``now - end_offset``.

    Usage::

        store = WatermarkStore(backfill_horizon=timedelta(hours=12))
        await store.bootstrap(channel, sink)
        start = store.get_or_default(channel)
    """

    def __init__(
        self,
        backfill_horizon: timedelta = timedelta(hours=12),
        end_offset: timedelta = timedelta(milliseconds=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._horizon = backfill_horizon
        self._end_offset = end_offset
        self._clock = clock
        self._marks: dict[Channel, datetime] = {}

    def get(self, channel: Channel) -> datetime | None:
        return self._marks.get(channel)

    def get_or_default(self, channel: Channel) -> datetime:
        """Return the watermark, seeding it with the backfill horizon if unseen."""
        mark = self._marks.get(channel)
        if mark is None:
            mark = self.default_start()
            self._marks[channel] = mark
            logger.debug("No watermark for %s, starting at %s", channel, mark)
        return mark

    def set(self, channel: Channel, instant: datetime) -> datetime:
        """Advance the watermark for ``channel`` and return the stored value."""
        ceiling = self._clock() - self._end_offset
        if instant > ceiling:
            instant = ceiling

        current = self._marks.get(channel)
        if current is not None and instant < current:
            logger.debug(
                "Ignoring backwards watermark for %s: %s < %s", channel, instant, current
            )
            return current

        self._marks[channel] = instant
        return instant

    def default_start(self) -> datetime:
        return self._clock() - self._horizon

    async def bootstrap(self, channel: Channel, sink: ReadingsSink) -> datetime:
        """Seed the watermark for ``channel`` from the sink's last reading.

        Falls back to ``now - backfill_horizon`` when the sink has no history
        or cannot be queried.
        """
        try:
            last = await sink.load(channel)
        except Exception as exc:
            logger.warning("Could not load history for %s: %s", channel, exc)
            last = None

        logger.debug("last reading for %s: %s", channel, last)
        if last is not None and last.end is not None:
            mark = last.end
        else:
            mark = self.default_start()

        ceiling = self._clock() - self._end_offset
        if mark > ceiling:
            logger.warning("Last reading for %s is in the future (%s), clamping", channel, mark)
            mark = ceiling

        current = self._marks.get(channel)
        if current is not None and current > mark:
            return current
        self._marks[channel] = mark
        return mark

    def __contains__(self, channel: object) -> bool:
        return channel in self._marks

    def __len__(self) -> int:
        return len(self._marks)
