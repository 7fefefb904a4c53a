"""InfluxDB 1.x sink for usage readings.

Talks to InfluxDB's HTTP API directly:
    /query  — InfluxQL, used to find the last persisted point per channel
    /write  — line protocol, used to persist buffered batches

``save()`` only appends to an in-memory buffer; ``write_to_db()`` drains the
buffer.  A failed write puts the unwritten batches back at the front of the
buffer so the next flush retries them, and the buffer is capped at
``max_pending`` batches.  Points are keyed by timestamp and tags, so
re-writing a batch overwrites rather than duplicates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from src.metering.base import Channel, Readings, ReadingsSink, SinkError

logger = logging.getLogger("emporia.influxdb")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Lines per /write request
DEFAULT_BATCH_SIZE = 5000

# Batches held while InfluxDB is unreachable before the oldest are dropped
DEFAULT_MAX_PENDING = 1000


def _escape_tag(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def _quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def to_nanoseconds(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    delta = ts - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000


def render_lines(readings: Readings, measurement: str) -> list[str]:
    """Render one batch as InfluxDB line protocol (ns precision).

    Null samples are skipped; values are scaled by the channel multiplier.
    """
    channel = readings.channel
    tags = (
        f"device_gid={channel.device_gid}"
        f",channel_num={_escape_tag(channel.channel_num)}"
    )
    if channel.name:
        tags += f",channel_name={_escape_tag(channel.name)}"
    prefix = f"{_escape_measurement(measurement)},{tags}"

    return [
        f"{prefix} usage={float(value) * channel.channel_multiplier!r} {to_nanoseconds(ts)}"
        for ts, value in readings.points()
    ]


class InfluxDBLoader(ReadingsSink):
    """Buffering InfluxDB writer that can also report per-channel history.

    Usage::

        loader = InfluxDBLoader("http://localhost:8086", database="electricity")
        last = await loader.load(channel)
        loader.save(readings)
        written = await loader.write_to_db()
    """

    def __init__(
        self,
        base_url: str,
        database: str,
        username: str | None = None,
        password: str | None = None,
        measurement: str = "usage",
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_pending: int = DEFAULT_MAX_PENDING,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the loader.

        Args:
            base_url:    InfluxDB server URL including port.
            database:    Target database.
            username:    Optional basic-auth user.
            password:    Optional basic-auth password.
            measurement: Measurement the usage points are written to.
            batch_size:  Maximum lines per write request; batches are split
                         across requests as needed.
            max_pending: Maximum buffered batches; the oldest are dropped
                         beyond this.
            http_client: Optional pre-configured httpx client (for testing).
        """
        self._base_url = base_url.rstrip("/")
        self._database = database
        self._measurement = measurement
        self._batch_size = batch_size
        self._max_pending = max_pending
        auth = httpx.BasicAuth(username, password or "") if username else None
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(auth=auth, timeout=30)
        self._buffer: list[Readings] = []
        self._writes_count = 0

    @property
    def writes_count(self) -> int:
        """Total points written since startup."""
        return self._writes_count

    @property
    def pending(self) -> int:
        """Number of batches waiting to be written."""
        return len(self._buffer)

    async def load(self, channel: Channel) -> Readings | None:
        """Return a Readings marker at the channel's last persisted point.

        Returns:
            Readings with ``start == end == last point time``, or None if the
            channel has no points yet.

        Raises:
            SinkError: If the query fails.
        """
        query = (
            f'SELECT last("usage") FROM "{self._measurement}" '
            f'WHERE "device_gid"={_quote_literal(str(channel.device_gid))} '
            f'AND "channel_num"={_quote_literal(channel.channel_num)}'
        )
        try:
            response = await self._http_client.get(
                f"{self._base_url}/query",
                params={"db": self._database, "q": query, "epoch": "ms"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SinkError(f"History query for {channel} failed: {exc}") from exc

        results = data.get("results") or [{}]
        if error := results[0].get("error"):
            raise SinkError(f"History query for {channel} failed: {error}")

        series = results[0].get("series") or []
        if not series or not series[0].get("values"):
            return None

        last_ms = series[0]["values"][0][0]
        last = datetime.fromtimestamp(last_ms / 1000, tz=timezone.utc)
        return Readings(channel=channel, start=last, end=last)

    def save(self, readings: Readings) -> None:
        if not readings.has_data:
            return
        self._buffer.append(readings)
        self._trim()

    async def write_to_db(self) -> int:
        """Write every buffered batch to InfluxDB.

        Batches are rendered in order and posted ``batch_size`` lines at a
        time, so a large batch may span several requests.  Whatever has not
        been written when this returns or raises (including cancellation)
        goes back to the front of the buffer.  A chunk InfluxDB rejects as
        malformed (4xx other than 429) is logged and dropped.

        Returns:
            Number of points written by this call.

        Raises:
            SinkError: If a write fails; unwritten batches remain buffered.
        """
        batches, self._buffer = self._buffer, []
        if not batches:
            return 0

        written = 0
        done = 0  # batches known to be fully written
        lines: list[str] = []
        try:
            for i, readings in enumerate(batches):
                if not lines:
                    done = i
                lines.extend(render_lines(readings, self._measurement))
                while len(lines) >= self._batch_size:
                    written += await self._post(lines[: self._batch_size])
                    lines = lines[self._batch_size:]
            if lines:
                written += await self._post(lines)
            done = len(batches)
        finally:
            self._buffer[:0] = batches[done:]
            self._writes_count += written
            self._trim()

        logger.info("Wrote %d points from %d batches to %s", written, len(batches), self._database)
        return written

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    def _trim(self) -> None:
        overflow = len(self._buffer) - self._max_pending
        if overflow > 0:
            del self._buffer[:overflow]
            logger.warning(
                "Write buffer full (%d batches), dropped the %d oldest",
                self._max_pending, overflow,
            )

    async def _post(self, lines: list[str]) -> int:
        """POST one chunk; return the number of points InfluxDB accepted."""
        if not lines:
            return 0
        try:
            response = await self._http_client.post(
                f"{self._base_url}/write",
                params={"db": self._database, "precision": "ns"},
                content="\n".join(lines).encode("utf-8"),
            )
        except httpx.HTTPError as exc:
            raise SinkError(f"Write of {len(lines)} points failed: {exc}") from exc

        if response.is_client_error and response.status_code != 429:
            logger.error(
                "InfluxDB rejected %d points (HTTP %d), dropping them: %s",
                len(lines), response.status_code, response.text[:200],
            )
            return 0
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SinkError(f"Write of {len(lines)} points failed: {exc}") from exc
        return len(lines)
