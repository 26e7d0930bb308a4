"""Tests for ExecutionEvent matching and the in-memory event bus."""

import asyncio

import pytest

from runspine.core.events import ALL, ExecutionEvent
from runspine.core.events.memory import InMemoryEventBus


# ---------------------------------------------------------------------------
# ExecutionEvent
# ---------------------------------------------------------------------------


class TestExecutionEvent:
    def test_matches_exact_type(self):
        event = ExecutionEvent("log", execution_id="e1")
        assert event.matches("e1", "log")
        assert not event.matches("e1", "execution:started")

    def test_matches_prefix_pattern(self):
        event = ExecutionEvent("execution:failed", execution_id="e1")
        assert event.matches("e1", "execution:*")
        assert not event.matches("e1", "step:*")

    def test_matches_any_execution(self):
        event = ExecutionEvent("log", execution_id="e1")
        assert event.matches(ALL, ALL)
        assert not event.matches("e2", ALL)

    def test_terminal(self):
        assert ExecutionEvent("execution:completed", execution_id="e1").is_terminal
        assert ExecutionEvent("execution:cancelled", execution_id="e1").is_terminal
        assert not ExecutionEvent("execution:progress", execution_id="e1").is_terminal

    def test_to_dict(self):
        data = ExecutionEvent("log", execution_id="e1", payload={"message": "hi"}).to_dict()
        assert data["type"] == "log"
        assert data["execution_id"] == "e1"
        assert data["payload"] == {"message": "hi"}
        assert data["event_id"]


# ---------------------------------------------------------------------------
# InMemoryEventBus
# ---------------------------------------------------------------------------


class TestInMemoryEventBus:
    async def test_publish_reaches_matching_subscribers(self):
        bus = InMemoryEventBus()
        seen: list[str] = []

        async def handler(event):
            seen.append(event.event_type)

        await bus.subscribe("e1", handler, "execution:*")
        await bus.publish(ExecutionEvent("execution:started", execution_id="e1"))
        await bus.publish(ExecutionEvent("log", execution_id="e1"))
        await bus.publish(ExecutionEvent("execution:started", execution_id="e2"))

        assert seen == ["execution:started"]

    async def test_unsubscribe(self):
        bus = InMemoryEventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        sub_id = await bus.subscribe(ALL, handler)
        assert bus.subscription_count == 1
        await bus.unsubscribe(sub_id)
        await bus.publish(ExecutionEvent("log", execution_id="e1"))
        assert seen == []

    async def test_handler_errors_do_not_reach_publisher(self):
        bus = InMemoryEventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("handler bug")

        async def healthy(event):
            seen.append(event)

        await bus.subscribe(ALL, broken)
        await bus.subscribe(ALL, healthy)
        await bus.publish(ExecutionEvent("log", execution_id="e1"))
        assert len(seen) == 1

    async def test_events_delivered_in_publish_order(self):
        bus = InMemoryEventBus()
        seen = []

        async def handler(event):
            seen.append(event.payload["n"])

        await bus.subscribe("e1", handler)
        for n in range(5):
            await bus.publish(ExecutionEvent("log", execution_id="e1", payload={"n": n}))
        assert seen == [0, 1, 2, 3, 4]

    async def test_closed_bus_drops_events(self):
        bus = InMemoryEventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        await bus.subscribe(ALL, handler)
        await bus.close()
        await bus.publish(ExecutionEvent("log", execution_id="e1"))
        assert seen == []
        assert bus.subscription_count == 0


class TestEventStream:
    async def test_stream_ends_after_terminal_event(self):
        bus = InMemoryEventBus()

        async def consume():
            async with bus.stream("e1") as events:
                return [event.event_type async for event in events]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await bus.publish(ExecutionEvent("execution:started", execution_id="e1"))
        await bus.publish(ExecutionEvent("execution:completed", execution_id="e1"))
        await bus.publish(ExecutionEvent("log", execution_id="e1"))

        assert await asyncio.wait_for(task, timeout=1) == ["execution:started", "execution:completed"]
        assert bus.subscription_count == 0

    async def test_close_ends_open_streams(self):
        bus = InMemoryEventBus()

        async def consume():
            async with bus.stream("e1") as events:
                return [event async for event in events]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await bus.close()
        assert await asyncio.wait_for(task, timeout=1) == []


@pytest.mark.parametrize("pattern", ["execution:*", "*"])
def test_pattern_matches_lifecycle_events(pattern):
    assert ExecutionEvent("execution:progress", execution_id="e1").matches("e1", pattern)
