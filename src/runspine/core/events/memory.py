"""
In-memory event bus implementation.

Manifesto:
    Single-process deployments and test suites need an event bus that
    delivers events immediately without external infrastructure.

Events are delivered to handlers as they are published and are not
persisted.  ``stream()`` adapts the push model to an async iterator
backed by an ``asyncio.Queue``.

Tags:
    runspine, events, in-memory, asyncio, testing, single-node

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from types import TracebackType

from runspine.core.events import ALL, EventHandler, ExecutionEvent
from runspine.core.logging import get_logger

__all__ = ["InMemoryEventBus", "EventStream"]

logger = get_logger(__name__)

_CLOSED = object()


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    execution_id: str
    pattern: str
    handler: EventHandler


class EventStream:
    """Async iterator over one execution's events.

    Ends after the execution's terminal event (``execution:completed``,
    ``execution:failed`` or ``execution:cancelled``) or when the bus is
    closed.

    Example::

        async with bus.stream(execution_id) as events:
            async for event in events:
                print(event.event_type)
    """

    def __init__(self, bus: InMemoryEventBus, execution_id: str, event_type: str = ALL) -> None:
        self._bus = bus
        self._execution_id = execution_id
        self._event_type = event_type
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._subscription_id: str | None = None
        self._done = False

    async def _enqueue(self, event: ExecutionEvent) -> None:
        self._queue.put_nowait(event)

    def _close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> EventStream:
        self._subscription_id = await self._bus.subscribe(
            self._execution_id, self._enqueue, self._event_type
        )
        self._bus._streams.add(self)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._bus._streams.discard(self)
        if self._subscription_id is not None:
            await self._bus.unsubscribe(self._subscription_id)

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> ExecutionEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        assert isinstance(item, ExecutionEvent)
        if item.is_terminal:
            self._done = True
        return item


class InMemoryEventBus:
    """In-process event bus keyed by execution id.

    Each published event is delivered to all matching handlers before
    ``publish`` returns, so every subscriber sees events in publish order.

    Example::

        bus = InMemoryEventBus()

        async def log_event(event: ExecutionEvent):
            print(f"Event: {event.event_type}")

        await bus.subscribe("*", log_event)
        await bus.publish(ExecutionEvent("execution:started", execution_id="e1"))
        # Output: Event: execution:started
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._streams: set[EventStream] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    async def publish(self, event: ExecutionEvent) -> None:
        """Publish an event to all matching subscribers.

        Handlers are called concurrently using asyncio.gather.
        Exceptions in handlers are logged but don't stop delivery.
        """
        if self._closed:
            return

        async with self._lock:
            handlers_to_call = [
                (sub.id, sub.handler)
                for sub in self._subscriptions.values()
                if event.matches(sub.execution_id, sub.pattern)
            ]

        if not handlers_to_call:
            return

        async def safe_call(sub_id: str, handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as e:
                logger.warning(
                    "events.handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    execution_id=event.execution_id,
                    error=str(e),
                )

        await asyncio.gather(
            *[safe_call(sub_id, handler) for sub_id, handler in handlers_to_call],
            return_exceptions=True,
        )

    async def subscribe(
        self,
        execution_id: str,
        handler: EventHandler,
        event_type: str = ALL,
    ) -> str:
        """Subscribe to events of one execution (``"*"`` for every execution).

        Args:
            execution_id: Execution to follow, or ``"*"``
            handler: Async callback for matching events
            event_type: Type pattern (``*``, ``execution:*`` or an exact type)

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"

        async with self._lock:
            self._subscriptions[sub_id] = Subscription(
                id=sub_id,
                execution_id=execution_id,
                pattern=event_type,
                handler=handler,
            )

        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        async with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def stream(self, execution_id: str, event_type: str = ALL) -> EventStream:
        """Open an async-iterable stream of one execution's events."""
        return EventStream(self, execution_id, event_type)

    async def close(self) -> None:
        """Mark bus as closed, clear subscriptions and end open streams."""
        self._closed = True
        async with self._lock:
            self._subscriptions.clear()
        for stream in list(self._streams):
            stream._close()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
