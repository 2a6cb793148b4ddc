"""
EventBus and activity log handler tests.
"""

import asyncio
import logging
from collections import deque

import pytest

from core.events import ACTIVITY_LOG, EventBus
from core.logger import UIStreamHandler, colorize


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        bus = EventBus()
        seen = []

        async def async_listener(payload):
            seen.append(("async", payload["n"]))

        await bus.subscribe("tick", lambda payload: seen.append(("sync", payload["n"])))
        await bus.subscribe("tick", async_listener)
        await bus.broadcast("tick", {"n": 1})

        assert seen == [("sync", 1), ("async", 1)]
        assert bus.subscriber_count("tick") == 2

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_starve_others(self):
        bus = EventBus()
        seen = []

        def broken(payload):
            raise RuntimeError("boom")

        await bus.subscribe("tick", broken)
        await bus.subscribe("tick", seen.append)
        await bus.broadcast("tick", {"n": 2})

        assert seen == [{"n": 2}]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        await bus.subscribe("tick", seen.append)
        await bus.unsubscribe("tick", seen.append)
        await bus.broadcast("tick", {})

        assert seen == []

    @pytest.mark.asyncio
    async def test_broadcast_counts_successful_deliveries(self):
        bus = EventBus()

        def broken(payload):
            raise RuntimeError("boom")

        await bus.subscribe("tick", broken)
        await bus.subscribe("tick", lambda payload: None)

        assert await bus.broadcast("tick", {}) == 1
        assert await bus.broadcast("nobody", {}) == 0

    @pytest.mark.asyncio
    async def test_next_waits_for_matching_payload(self):
        bus = EventBus()
        waiter = asyncio.create_task(bus.next("state", lambda p: p["status"] == "completed", timeout=1.0))
        await asyncio.sleep(0)

        await bus.broadcast("state", {"status": "approved"})
        await bus.broadcast("state", {"status": "completed"})

        assert await waiter == {"status": "completed"}
        assert bus.subscriber_count("state") == 0

    @pytest.mark.asyncio
    async def test_next_times_out(self):
        bus = EventBus()

        with pytest.raises(asyncio.TimeoutError):
            await bus.next("state", timeout=0.05)
        assert bus.subscriber_count("state") == 0


class TestUIStreamHandler:

    def test_colorize_known_tag(self):
        assert "purple" in colorize("[ORCH] started")
        assert colorize("plain line") == "plain line"

    def test_buffer_without_loop(self):
        buffer = deque(maxlen=2)
        handler = UIStreamHandler(buffer, EventBus())
        record = logging.LogRecord("wallet", logging.INFO, __file__, 1, "[PROOF] generating", None, None)

        handler.emit(record)

        assert len(buffer) == 1
        assert "[PROOF] generating" in buffer[0]

    @pytest.mark.asyncio
    async def test_broadcasts_activity(self):
        events = EventBus()
        lines = []
        await events.subscribe(ACTIVITY_LOG, lines.append)
        handler = UIStreamHandler(deque(), events)
        record = logging.LogRecord("wallet", logging.WARNING, __file__, 1, "[VC] saved", None, None)

        handler.emit(record)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert lines and lines[0]["level"] == "WARNING"
