"""Timeout enforcement for step attempts and engine calls.

Two deadlines bound the work of an execution:

- the **step timeout**: every executor invocation races its
  ``timeout_seconds`` (engine default 300s); losing the race produces a
  failed attempt with ``StepTimeoutError`` (code ``TIMEOUT``);
- the **runbook timeout**: the active part of each engine call
  (``run`` / ``resume``) is bounded by ``runbook.timeout_seconds``.

Nested deadlines compose: the step timeout is clipped to whatever remains
of the enclosing runbook deadline.

Architecture:
    ::

        async with with_deadline_async(3600, operation="runbook"):   ← runbook
            ...
            await run_with_timeout_async(executor.execute(...), 300)  ← step
                        │
                        ▼
              asyncio.wait_for(coro, min(300, remaining))

Examples:
    >>> async with with_deadline_async(10.0, operation="runbook") as ctx:
    ...     await asyncio.sleep(0.1)
    ...     ctx.remaining() > 9
    True

Tags:
    timeout, deadline, asyncio, execution-control
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TypeVar

from runspine.core.errors import StepTimeoutError

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """Raised when an enclosing deadline is exceeded.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the operation ran before being interrupted
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation

        msg = f"Operation '{operation}' timed out after {timeout:g}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"
        super().__init__(msg)


@dataclass
class DeadlineContext:
    """Deadline state of one ``with_deadline_async`` block.

    Attributes:
        deadline: Absolute deadline timestamp (monotonic clock)
        timeout_seconds: Original timeout value in seconds
        operation: Name/description of the operation
        start_time: When the deadline context started
    """

    deadline: float
    timeout_seconds: float
    operation: str = "operation"
    start_time: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        """Remaining seconds; negative once expired."""
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def is_expired(self) -> bool:
        return time.monotonic() >= self.deadline


# Per-task stack of active deadlines (asyncio tasks copy the context).
_deadlines: ContextVar[tuple[DeadlineContext, ...]] = ContextVar("runspine_deadlines", default=())


def get_current_deadline() -> DeadlineContext | None:
    stack = _deadlines.get()
    return stack[-1] if stack else None


def get_effective_timeout(requested: float) -> float:
    """Clip ``requested`` to the remaining time of the enclosing deadline."""
    current = get_current_deadline()
    if current is None:
        return requested
    return max(0.0, min(requested, current.remaining()))


@asynccontextmanager
async def with_deadline_async(
    seconds: float, operation: str | None = None
) -> AsyncIterator[DeadlineContext]:
    """Async context manager bounding the enclosed block to ``seconds``.

    Raises:
        TimeoutExpired: If the deadline is exceeded
        ValueError: If seconds is negative
    """
    if seconds < 0:
        raise ValueError(f"Timeout must be non-negative, got {seconds}")

    effective = get_effective_timeout(seconds)
    now = time.monotonic()
    ctx = DeadlineContext(
        deadline=now + effective,
        timeout_seconds=effective,
        operation=operation or "operation",
        start_time=now,
    )

    token = _deadlines.set(_deadlines.get() + (ctx,))
    try:
        async with asyncio.timeout(effective):
            yield ctx
    except TimeoutError as e:
        if isinstance(e, TimeoutExpired):
            raise
        raise TimeoutExpired(
            timeout=effective,
            elapsed=ctx.elapsed,
            operation=ctx.operation,
        ) from None
    finally:
        _deadlines.reset(token)


async def run_with_timeout_async(
    coro: Awaitable[T],
    timeout_seconds: float,
    operation: str | None = None,
) -> T:
    """Run an awaitable against a step timeout.

    The timeout is clipped to any enclosing deadline; an enclosing
    deadline expiring first surfaces as that deadline's ``TimeoutExpired``
    rather than a step timeout.

    Raises:
        StepTimeoutError: If the awaitable loses the race
        ValueError: If timeout_seconds is not positive
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    effective = get_effective_timeout(timeout_seconds)
    try:
        return await asyncio.wait_for(coro, timeout=effective)
    except TimeoutError as e:
        if isinstance(e, TimeoutExpired):
            raise
        outer = get_current_deadline()
        if effective < timeout_seconds and outer is not None:
            raise TimeoutExpired(
                timeout=outer.timeout_seconds,
                elapsed=outer.elapsed,
                operation=outer.operation,
            ) from None
        raise StepTimeoutError(timeout_seconds, operation) from None


__all__ = [
    "TimeoutExpired",
    "DeadlineContext",
    "get_current_deadline",
    "get_effective_timeout",
    "with_deadline_async",
    "run_with_timeout_async",
]
