"""Tests for the polling sync loop."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from src.metering.base import Channel, Customer, UpstreamError
from src.metering.sync.planner import DrainStatus
from src.metering.sync.scheduler import SyncLoop
from src.services.influxdb import InfluxDBLoader
from src.metering.tests.conftest import (
    EPS,
    HOUR,
    T0,
    FakeClock,
    RecordingSink,
    ScriptedSource,
)


def _loop(customer, source, sink, clock, poll_interval=timedelta(minutes=5)) -> SyncLoop:
    return SyncLoop(
        customer,
        source,
        sink=sink,
        poll_interval=poll_interval,
        end_offset=EPS,
        clock=clock,
    )


class TestBootstrapPhase:
    @pytest.mark.asyncio
    async def test_seeds_every_channel_without_fetching(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        main = Channel(1001, "1,2,3")
        sink = RecordingSink(history={main: T0})
        source = ScriptedSource(customer)
        loop = _loop(customer, source, sink, clock)

        seeded = await loop.bootstrap()

        assert seeded == 4
        assert source.requests == []
        assert loop.watermarks.get(main) == T0
        assert loop.watermarks.get(Channel(3003, "1")) == clock() - timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_noop_without_sink(self, customer: Customer, clock: FakeClock) -> None:
        loop = _loop(customer, ScriptedSource(customer), None, clock)
        assert await loop.bootstrap() == 0
        assert len(loop.watermarks) == 0


class TestCycle:
    @pytest.mark.asyncio
    async def test_visits_nested_devices_in_order(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        source = ScriptedSource(customer)
        loop = _loop(customer, source, RecordingSink(), clock)

        result = await loop.run_cycle()

        assert [d.channel for d in result.drains] == [
            Channel(1001, "1,2,3"),
            Channel(2002, "1"),
            Channel(2002, "2"),
            Channel(3003, "1"),
        ]

    @pytest.mark.asyncio
    async def test_failed_channel_does_not_stop_others(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        source = ScriptedSource(customer)
        failing = Channel(2002, "1")
        healthy = Channel(2002, "2")
        source.script(failing, UpstreamError("503 Service Unavailable"))
        start = clock() - timedelta(hours=12)
        source.script(healthy, (start, start + HOUR), (start + HOUR, None))
        sink = RecordingSink()
        loop = _loop(customer, source, sink, clock)

        result = await loop.run_cycle()

        statuses = {d.channel: d.status for d in result.drains}
        assert statuses[failing] == DrainStatus.FAILED
        assert statuses[healthy] == DrainStatus.NO_DATA
        assert loop.watermarks.get(healthy) == start + HOUR
        assert len(sink.flushed) == 1
        assert any("503" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_flush_failure_keeps_data_for_next_cycle(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        source = ScriptedSource(customer)
        main = Channel(1001, "1,2,3")
        start = clock() - timedelta(hours=12)
        source.script(main, (start, start + HOUR), (start + HOUR, None))
        sink = RecordingSink()
        sink.fail_flushes = 1
        loop = _loop(customer, source, sink, clock)

        first = await loop.run_cycle()
        assert first.flushed == 0
        assert len(sink.buffer) == 1
        assert any(e.startswith("flush") for e in first.errors)

        second = await loop.run_cycle()
        assert second.flushed == 1
        assert len(sink.flushed) == 1

    @pytest.mark.asyncio
    async def test_skips_cycle_during_maintenance(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        source = ScriptedSource(customer, maintenance=True)
        sink = RecordingSink()
        result = await _loop(customer, source, sink, clock).run_cycle()

        assert result.skipped
        assert source.requests == []
        assert sink.flush_calls == 0


class TestRun:
    @pytest.mark.asyncio
    async def test_stop_during_sleep_flushes_once_more(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        source = ScriptedSource(customer)
        main = Channel(1001, "1,2,3")
        sink = RecordingSink(history={main: T0})
        # The third response is left over for the late save below
        source.script(main, (T0, T0 + HOUR), (T0 + HOUR, None), (T0 + HOUR, T0 + 2 * HOUR))
        loop = _loop(customer, source, sink, clock, poll_interval=timedelta(hours=1))
        stop = asyncio.Event()

        task = asyncio.create_task(loop.run(stop))
        while sink.flush_calls < 1:
            await asyncio.sleep(0)
        # Data saved after the cycle flush must survive shutdown
        late = await source.get_readings(main, T0 + HOUR, T0 + 2 * HOUR)
        sink.save(late)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert sink.flush_calls == 2
        assert sink.buffer == []
        assert len(sink.flushed) == 2

    @pytest.mark.asyncio
    async def test_cancellation_still_flushes(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        sink = RecordingSink()
        loop = _loop(customer, ScriptedSource(customer), sink, clock)

        task = asyncio.create_task(loop.run(asyncio.Event()))
        while sink.flush_calls < 1:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sink.flush_calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_mid_write_flushes_saved_batches(
        self, customer: Customer, clock: FakeClock
    ) -> None:
        source = ScriptedSource(customer)
        main = Channel(1001, "1,2,3")
        start = clock() - timedelta(hours=12)
        source.script(main, (start, start + HOUR), (start + HOUR, None))
        posting = asyncio.Event()
        state = {"hang": True}
        bodies: list[bytes] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/query":
                return httpx.Response(200, json={"results": [{"statement_id": 0}]})
            if state["hang"]:
                posting.set()
                await asyncio.sleep(10)
            bodies.append(request.content)
            return httpx.Response(204)

        sink = InfluxDBLoader(
            "http://influx:8086",
            database="electricity",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        loop = _loop(customer, source, sink, clock)

        task = asyncio.create_task(loop.run(asyncio.Event()))
        await asyncio.wait_for(posting.wait(), timeout=1)
        state["hang"] = False
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sink.pending == 0
        assert sink.writes_count == 2
        assert len(bodies) == 1

    @pytest.mark.asyncio
    async def test_repeats_after_interval(self, customer: Customer, clock: FakeClock) -> None:
        sink = RecordingSink()
        loop = _loop(customer, ScriptedSource(customer), sink, clock, poll_interval=timedelta(0))
        stop = asyncio.Event()

        task = asyncio.create_task(loop.run(stop))
        while sink.flush_calls < 3:
            await asyncio.sleep(0)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert sink.flush_calls >= 4

    @pytest.mark.asyncio
    async def test_customer_without_devices_returns(self, clock: FakeClock) -> None:
        empty = Customer(customer_gid=1, email="empty@example.com")
        sink = RecordingSink()
        await _loop(empty, ScriptedSource(empty), sink, clock).run()

        assert sink.flush_calls == 0
