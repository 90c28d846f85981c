"""Tests for the event bus and the handlers that listen on it."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from parley.events import (
    COMPACTION_COMPLETED,
    SESSIONS_EXPIRED,
    TURN_COMPLETED,
    Event,
    EventBus,
)
from parley.handlers.session_monitor import SessionCleanupMonitor
from parley.handlers.telemetry import TelemetryRecorder
from parley.storage.models import SessionRow

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    event_type: str = "test_event",
    data: dict | None = None,
    session_id: str | None = "sess-1",
) -> Event:
    return Event(type=event_type, data=data or {}, session_id=session_id)


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    """Core event bus tests using REAL EventBus."""

    @pytest.mark.asyncio
    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].type == "test_event"
            assert received[0].session_id == "sess-1"
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_multiple_handlers_same_event(self):
        bus = EventBus()
        results: list[str] = []

        async def handler_a(event: Event) -> None:
            results.append("a")

        async def handler_b(event: Event) -> None:
            results.append("b")

        bus.on("test_event", handler_a)
        bus.on("test_event", handler_b)
        await bus.emit(_make_event())
        await bus.drain()
        assert sorted(results) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_any_handler_sees_every_type(self):
        bus = EventBus()
        seen: list[str] = []

        async def handler(event: Event) -> None:
            seen.append(event.type)

        bus.on_any(handler)
        await bus.emit(_make_event("one"))
        await bus.emit(_make_event("two"))
        await bus.drain()
        assert seen == ["one", "two"]

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_block_other_handlers(self):
        bus = EventBus()
        results: list[str] = []

        async def bad_handler(event: Event) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: Event) -> None:
            results.append("ok")

        bus.on("test_event", bad_handler)
        bus.on("test_event", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            # still running after the failure
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert results == ["ok", "ok"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        bus = EventBus(max_queue=1)
        await bus.emit(_make_event("first"))
        assert bus.pending == 1
        await bus.emit(_make_event("second"))
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_stop_drains_remaining_events(self):
        bus = EventBus()
        received: list[int] = []

        async def handler(event: Event) -> None:
            received.append(event.data["n"])

        bus.on("test_event", handler)
        await bus.emit(_make_event(data={"n": 1}))
        await bus.emit(_make_event(data={"n": 2}))
        assert bus.pending == 2
        await bus.stop()
        assert received == [1, 2]
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_no_handlers_is_fine(self):
        bus = EventBus()
        await bus.emit(_make_event("nobody_listens"))
        await bus.drain()
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        bus = EventBus()
        await bus.start()
        await bus.start()
        await bus.stop()


# ---------------------------------------------------------------------------
# TelemetryRecorder
# ---------------------------------------------------------------------------


class TestTelemetryRecorder:
    @pytest.mark.asyncio
    async def test_counts_and_totals(self):
        bus = EventBus()
        telemetry = TelemetryRecorder(bus)

        await bus.emit(_make_event(TURN_COMPLETED, {"succeeded": True, "parts_completed": 3}))
        await bus.emit(_make_event(TURN_COMPLETED, {"succeeded": False, "parts_completed": 1}))
        await bus.emit(_make_event(COMPACTION_COMPLETED, {"tokens_before": 900, "tokens_after": 200}))
        await bus.drain()

        assert telemetry.count(TURN_COMPLETED) == 2
        assert telemetry.count("never_seen") == 0
        assert telemetry.snapshot() == {
            "events": {TURN_COMPLETED: 2, COMPACTION_COMPLETED: 1},
            "turns_failed": 1,
            "parts_executed": 4,
            "tokens_reclaimed": 700,
        }


# ---------------------------------------------------------------------------
# SessionCleanupMonitor
# ---------------------------------------------------------------------------


async def _expire(database, settings, session_id: str) -> None:
    async with database.session() as session:
        await session.execute(
            update(SessionRow)
            .where(SessionRow.id == session_id)
            .values(
                last_activity=datetime.now(UTC) - timedelta(seconds=settings.session_timeout + 5)
            )
        )
        await session.commit()


class TestSessionCleanupMonitor:
    @pytest.mark.asyncio
    async def test_sweep_emits_when_sessions_removed(self, store, database, settings):
        bus = EventBus()
        counts: list[int] = []

        async def on_expired(event: Event) -> None:
            counts.append(event.data["count"])

        bus.on(SESSIONS_EXPIRED, on_expired)
        await store.create("stale")
        await store.create("fresh")
        await _expire(database, settings, "stale")

        monitor = SessionCleanupMonitor(store, bus, settings)
        assert await monitor.sweep() == 1
        await bus.drain()

        assert counts == [1]
        assert await store.get("fresh") is not None

    @pytest.mark.asyncio
    async def test_sweep_silent_when_nothing_expired(self, store, settings):
        bus = EventBus()
        await store.create("fresh")
        assert await SessionCleanupMonitor(store, bus, settings).sweep() == 0
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_loop_runs_on_interval(self, store, database, settings):
        bus = EventBus()
        await store.create("stale")
        await _expire(database, settings, "stale")

        fast = settings.model_copy(update={"cleanup_interval": 0.01})
        monitor = SessionCleanupMonitor(store, bus, fast)
        await monitor.start()
        try:
            for _ in range(50):
                if await store.count() == 0:
                    break
                await asyncio.sleep(0.02)
        finally:
            await monitor.stop()
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self, store, settings):
        await SessionCleanupMonitor(store, EventBus(), settings).stop()
