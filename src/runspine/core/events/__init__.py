"""Execution event bus.

Why This Package Exists
-----------------------
Observers (dashboards, CLIs, websocket bridges) want to follow a running
execution live: its log lines, its progress and its terminal outcome.
The engine must not know who is listening, and a broken listener must
never break a run.  The ``EventBus`` protocol decouples the engine (the
only producer) from any number of consumers.

Events are keyed by execution id.  There is no history: a late
subscriber reads past state through ``RunbookService.history``.

Usage::

    from runspine.core.events import ExecutionEvent
    from runspine.core.events.memory import InMemoryEventBus

    bus = InMemoryEventBus()

    async def on_progress(event: ExecutionEvent):
        print(event.payload["current_step_index"])

    sub_id = await bus.subscribe(execution_id, on_progress, "execution:progress")

    async with bus.stream(execution_id) as events:
        async for event in events:
            ...

Modules
-------
memory      InMemoryEventBus -- asyncio, single-process
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "ExecutionEvent",
    "EventBus",
    "EventHandler",
    "EVENT_TYPES",
    "TERMINAL_EVENT_TYPES",
    "ALL",
]

ALL = "*"

LOG = "log"
EXECUTION_STARTED = "execution:started"
EXECUTION_PROGRESS = "execution:progress"
EXECUTION_COMPLETED = "execution:completed"
EXECUTION_FAILED = "execution:failed"
EXECUTION_CANCELLED = "execution:cancelled"
STEP_APPROVED = "step:approved"
STEP_REJECTED = "step:rejected"
STEP_EXPIRED = "step:expired"

EVENT_TYPES: frozenset[str] = frozenset({
    LOG,
    EXECUTION_STARTED,
    EXECUTION_PROGRESS,
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_CANCELLED,
    STEP_APPROVED,
    STEP_REJECTED,
    STEP_EXPIRED,
})

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_CANCELLED,
})


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass
class ExecutionEvent:
    """One event about one execution.

    Attributes:
        event_type: ``log``, ``execution:*`` or ``step:*``
        execution_id: Execution the event belongs to
        payload: Event-specific data
        timestamp: When the event occurred (UTC)
        event_id: Unique event identifier
    """

    event_type: str
    execution_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, execution_id: str, pattern: str) -> bool:
        """Check the event against a subscription's key and type pattern.

        Examples:
            - ``execution:*`` matches ``execution:started``, ``execution:failed``
            - ``*`` matches everything
            - ``log`` matches exactly ``log``
        """
        if execution_id != ALL and execution_id != self.execution_id:
            return False
        if pattern == ALL:
            return True
        if pattern.endswith(":*"):
            return self.event_type.startswith(pattern[:-1])
        return self.event_type == pattern

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type,
            "execution_id": self.execution_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


# ── Type Aliases ─────────────────────────────────────────────────────────

EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


# ── EventBus Protocol ────────────────────────────────────────────────────


@runtime_checkable
class EventBus(Protocol):
    """Protocol for event bus implementations."""

    async def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event to every matching subscriber.

        Handler errors are logged and never propagate to the publisher.
        """
        ...

    async def subscribe(
        self,
        execution_id: str,
        handler: EventHandler,
        event_type: str = ALL,
    ) -> str:
        """Subscribe to one execution's events (or ``"*"`` for all).

        Returns:
            Subscription ID for later unsubscription
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...

    async def close(self) -> None:
        """Drop every subscription and end open streams."""
        ...
