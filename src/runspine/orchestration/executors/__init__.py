"""Step executors and the registry that dispatches to them.

Every step kind maps to one ``StepExecutor``.  Executors are stateless
with respect to a run: everything they need arrives through the step
(already template-rendered) and the :class:`ExecutionContext`.  They
report their outcome as a :class:`StepResult`; the engine persists it.

Container kinds (CONDITIONAL, PARALLEL) run their children back through
the engine via the :class:`StepRunner` protocol, so nested steps get the
same timeout, retry, persistence and logging treatment as top-level ones.

Registry::

    registry = ExecutorRegistry()
    registry.register(StepKind.WAIT, WaitExecutor())
    registry.get(StepKind.SHELL)   # -> ExecutorNotFoundError

Modules
-------
http         HttpExecutor        -- httpx requests with status/body assertions
sql          SqlExecutor         -- SQLAlchemy queries with row assertions
wait         WaitExecutor        -- asyncio sleep
manual       ManualExecutor      -- approval request, pauses the run
conditional  ConditionalExecutor -- branch on a condition
parallel     ParallelExecutor    -- concurrent children
ai           AiExecutor          -- analysis backend call
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from runspine.core.errors import ErrorCategory, ExecutorNotFoundError
from runspine.orchestration.models import StepExecutionResult
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import Step, StepKind

if TYPE_CHECKING:
    import httpx

    from runspine.core.settings import RunspineSettings
    from runspine.core.store import RunbookStore
    from runspine.orchestration.context import ExecutionContext


@runtime_checkable
class StepExecutor(Protocol):
    """Executes one step kind."""

    async def execute(self, step: Step, context: ExecutionContext) -> StepResult: ...


class StepRunner(Protocol):
    """What container executors need from the engine."""

    async def run_step(self, step: Step, context: ExecutionContext) -> StepExecutionResult:
        """Run one step with timeout, retry and persistence; returns its final row."""
        ...

    async def run_sequence(
        self, steps: Sequence[Step], context: ExecutionContext
    ) -> tuple[bool, StepExecutionResult | None]:
        """Run steps in order, stopping at the first failure that isn't tolerated.

        Returns ``(ok, failed_result)``; steps after the failure get no row.
        """
        ...

    async def skip_steps(
        self, steps: Sequence[Step], context: ExecutionContext, reason: str
    ) -> None:
        """Record SKIPPED rows for steps (and descendants) that have no result."""
        ...


_FATAL_CATEGORIES = frozenset({ErrorCategory.CONFIGURATION.value, ErrorCategory.VALIDATION.value})


def is_fatal_failure(result: StepExecutionResult | None) -> bool:
    """Whether a recorded failure was a configuration error (aborts the run)."""
    return bool(
        result is not None
        and result.error is not None
        and result.error.category in _FATAL_CATEGORIES
    )


class ExecutorRegistry:
    """Maps step kinds to executors."""

    def __init__(self) -> None:
        self._executors: dict[StepKind, StepExecutor] = {}

    def register(self, kind: StepKind, executor: StepExecutor) -> None:
        self._executors[kind] = executor

    def unregister(self, kind: StepKind) -> None:
        self._executors.pop(kind, None)

    def get(self, kind: StepKind) -> StepExecutor:
        """Return the executor for ``kind``.

        Raises:
            ExecutorNotFoundError: If no executor is registered.
        """
        try:
            return self._executors[kind]
        except KeyError:
            raise ExecutorNotFoundError(kind.value) from None

    def has(self, kind: StepKind) -> bool:
        return kind in self._executors

    @property
    def kinds(self) -> list[StepKind]:
        return list(self._executors)

    def close(self) -> None:
        """Release resources held by executors that cache them (SQL engines)."""
        for executor in self._executors.values():
            dispose = getattr(executor, "dispose", None)
            if dispose is not None:
                dispose()


def build_default_registry(
    runner: StepRunner,
    store: RunbookStore,
    settings: RunspineSettings,
    http_client: httpx.AsyncClient | None = None,
) -> ExecutorRegistry:
    """Registry with every built-in executor.

    SHELL and SCRIPT are left unregistered until they can be sandboxed.
    """
    from runspine.orchestration.executors.ai import AiExecutor
    from runspine.orchestration.executors.conditional import ConditionalExecutor
    from runspine.orchestration.executors.http import HttpExecutor
    from runspine.orchestration.executors.manual import ManualExecutor
    from runspine.orchestration.executors.parallel import ParallelExecutor
    from runspine.orchestration.executors.sql import SqlExecutor
    from runspine.orchestration.executors.wait import WaitExecutor

    registry = ExecutorRegistry()
    registry.register(StepKind.HTTP, HttpExecutor(client=http_client, timeout=settings.http_timeout_seconds))
    registry.register(StepKind.SQL, SqlExecutor())
    registry.register(StepKind.WAIT, WaitExecutor())
    registry.register(StepKind.MANUAL, ManualExecutor(store))
    registry.register(StepKind.CONDITIONAL, ConditionalExecutor(runner))
    registry.register(StepKind.PARALLEL, ParallelExecutor(runner))
    registry.register(StepKind.AI, AiExecutor(settings, client=http_client))
    return registry


__all__ = [
    "StepExecutor",
    "StepRunner",
    "ExecutorRegistry",
    "build_default_registry",
    "is_fatal_failure",
]
