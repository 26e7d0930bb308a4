"""Execution Engine — advances one execution through its step tree.

Manifesto:
    The engine is the only writer of step result rows and of an
execution's progress.  Everything it needs is injected (store, event
bus, settings, executor registry), so several engines can run side by
side in tests and nothing lives in module globals.

ARCHITECTURE
────────────
::

    ExecutionEngine
      ├── run(execution_id)              QUEUED → RUNNING → ... (one call)
      ├── resume(execution_id, index)    RUNNING, re-entered after approval
      ├── start / wait / drain           background asyncio tasks
      │
      ├── run_step(step, ctx)            timeout + retry + row + audit log
      ├── run_sequence(steps, ctx)       sequential contract (branches)
      └── skip_steps(steps, ctx)         SKIPPED rows for steps never run

    Per call:
        with_deadline_async(runbook.timeout_seconds)
          for each top-level step from ``from_index``:
              cancelled?  → stop, execution:cancelled
              run_step    → row persisted, context updated
              PAUSED      → checkpoint, return (approval resumes)
              FAILED      → rollback (if configured), FAILED, execution:failed
              advance current_step_index, execution:progress
        SUCCESS, execution:completed

Ownership:
    An engine advances an execution from at most one call at a time
    (``ExecutionBusyError`` otherwise).  While a MANUAL step is pausing,
    :meth:`ExecutionEngine.settle` lets the approval path wait until the
    PAUSED row is persisted and ownership is released.

Status changes use the store's compare-and-set ``transition_execution``
so a concurrent cancel is never overwritten.

Tags:
    runspine, orchestration, engine, runbook-execution

Doc-Types:
    api-reference, architecture
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Coroutine, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from runspine.core.errors import (
    ConfigurationError,
    ErrorCategory,
    ExecutionBusyError,
    ExecutionNotFoundError,
    ExecutionStateError,
    RunbookNotFoundError,
    RunspineError,
    StepTimeoutError,
)
from runspine.core.events import (
    EXECUTION_CANCELLED,
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_PROGRESS,
    EXECUTION_STARTED,
    EventBus,
    ExecutionEvent,
)
from runspine.core.logging import LogContext, get_logger
from runspine.core.secrets import SecretBackend, resolve_execution_secrets
from runspine.core.settings import RunspineSettings, get_settings
from runspine.core.store import RunbookStore
from runspine.execution.retry import RetryContext, strategy_for
from runspine.execution.timeout import (
    TimeoutExpired,
    get_current_deadline,
    run_with_timeout_async,
    with_deadline_async,
)
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.executors import (
    ExecutorRegistry,
    build_default_registry,
    is_fatal_failure,
)
from runspine.orchestration.models import (
    Execution,
    ExecutionStatus,
    LogLevel,
    RollbackConfig,
    RollbackTrigger,
    Runbook,
    StepExecutionResult,
    StepStatus,
    utcnow,
)
from runspine.orchestration.runbook_spec import parse_steps, rollback_config
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import Step, StepKind, StepPlan, iter_steps
from runspine.orchestration.templating import render_step

if TYPE_CHECKING:
    import httpx

logger = get_logger(__name__)


_DEADLINE_SLACK_SECONDS = 0.05


def _deadline_result(seconds: float) -> StepResult:
    return StepResult.fail(
        f"Runbook timeout after {seconds:g}s",
        code="TIMEOUT",
        category=ErrorCategory.TIMEOUT,
    )


class _Stopped(Exception):
    """The execution reached a terminal status outside this engine call."""


@dataclass
class _RunState:
    runbook: Runbook
    plan: StepPlan
    rollback: RollbackConfig
    rollback_plan: StepPlan
    current_index: int = 0


def _duration_ms(execution: Execution | None) -> int | None:
    if execution is None or execution.started_at is None:
        return None
    return int((utcnow() - execution.started_at).total_seconds() * 1000)


class ExecutionEngine:
    """
    Runs executions of runbooks.

    Args:
        store: Persistence for runbooks, executions, rows, approvals, logs
        event_bus: Where lifecycle and log events are published
        settings: Step/runbook timeouts and backend configuration
        registry: Executors by step kind (default: every built-in executor)
        secret_backends: Extra secret sources consulted after the store
        http_client: Shared ``httpx.AsyncClient`` for HTTP and AI steps

    Example:
        engine = ExecutionEngine(store, bus)
        execution = await engine.run(execution_id)
        if execution.status == ExecutionStatus.FAILED:
            print(execution.error_message)
    """

    def __init__(
        self,
        store: RunbookStore,
        event_bus: EventBus,
        settings: RunspineSettings | None = None,
        registry: ExecutorRegistry | None = None,
        secret_backends: list[SecretBackend] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._settings = settings or get_settings()
        self._registry = registry or build_default_registry(
            self, store, self._settings, http_client=http_client
        )
        self._secret_backends = list(secret_backends or [])
        self._runs: dict[str, _RunState] = {}
        self._owned: set[str] = set()
        self._pausing: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[Execution | None]] = {}
        self._slots = asyncio.Semaphore(self._settings.max_concurrent_executions)

    @property
    def registry(self) -> ExecutorRegistry:
        return self._registry

    @property
    def store(self) -> RunbookStore:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def is_active(self, execution_id: str) -> bool:
        """Whether a call of this engine is currently advancing the execution."""
        return execution_id in self._owned

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(self, execution_id: str) -> Execution:
        """Run a QUEUED execution until it completes, fails, pauses or is cancelled.

        Raises:
            ExecutionNotFoundError: Unknown execution
            ExecutionStateError: Execution is not QUEUED
            ExecutionBusyError: Execution is already being advanced
            ConfigurationError: Runbook is missing or does not parse (the
                execution is failed first)
        """
        execution = self._get_execution(execution_id)
        if execution.status == ExecutionStatus.CANCELLED:
            return execution
        if execution.status != ExecutionStatus.QUEUED:
            raise ExecutionStateError(
                f"Execution {execution_id} is {execution.status.value}, expected QUEUED"
            )

        with self._owning(execution_id):
            async with LogContext(execution_id=execution_id, runbook_id=execution.runbook_id):
                state = await self._load(execution, ExecutionStatus.QUEUED)

                started_at = utcnow()
                if not self._store.transition_execution(
                    execution_id,
                    {ExecutionStatus.QUEUED},
                    ExecutionStatus.RUNNING,
                    started_at=started_at,
                    total_steps=state.plan.total,
                    current_step_index=0,
                ):
                    logger.info("engine.run.not_started", reason="status changed before start")
                    return self._get_execution(execution_id)
                execution = self._get_execution(execution_id)

                context = self._build_context(execution, state)
                logger.info(
                    "engine.run.start",
                    runbook=state.runbook.name,
                    total_steps=state.plan.total,
                )
                await self._publish(
                    EXECUTION_STARTED,
                    execution_id,
                    {
                        "runbook_id": execution.runbook_id,
                        "runbook_name": state.runbook.name,
                        "total_steps": state.plan.total,
                        "triggered_by": execution.triggered_by,
                    },
                )
                await context.log(
                    LogLevel.INFO,
                    f"Starting execution of runbook: {state.runbook.name}",
                    metadata={"total_steps": state.plan.total},
                )
                try:
                    return await self._advance(state, context, from_index=0)
                finally:
                    self._runs.pop(execution_id, None)

    async def resume(self, execution_id: str, from_index: int) -> Execution:
        """Continue a RUNNING execution from flat index ``from_index``.

        The context is rebuilt from the store: the latest row of every
        step and the checkpointed variables.

        Raises:
            ExecutionNotFoundError: Unknown execution
            ExecutionStateError: Execution is not RUNNING, or the index
                would move progress backwards
            ExecutionBusyError: Execution is already being advanced
        """
        await self.settle(execution_id)
        execution = self._get_execution(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise ExecutionStateError(
                f"Execution {execution_id} is {execution.status.value}, expected RUNNING"
            )

        with self._owning(execution_id):
            async with LogContext(execution_id=execution_id, runbook_id=execution.runbook_id):
                state = await self._load(execution, ExecutionStatus.RUNNING)
                if from_index < execution.current_step_index or from_index > state.plan.total:
                    raise ExecutionStateError(
                        f"Cannot resume execution {execution_id} at step index {from_index} "
                        f"(current {execution.current_step_index}, total {state.plan.total})"
                    )

                results: dict[str, StepExecutionResult] = {}
                for row in self._store.list_step_results(execution_id):
                    results[row.step_id] = row
                snapshot = execution.context_snapshot or {}
                context = self._build_context(
                    execution,
                    state,
                    results=results,
                    variables=snapshot.get("variables"),
                )

                self._store.update_execution(execution_id, current_step_index=from_index)
                logger.info("engine.run.resume", from_index=from_index)
                try:
                    return await self._advance(state, context, from_index=from_index)
                finally:
                    self._runs.pop(execution_id, None)

    async def settle(self, execution_id: str) -> None:
        """Wait for a call that is pausing on a MANUAL step to release the execution."""
        event = self._pausing.get(execution_id)
        if event is not None:
            await event.wait()

    def start(self, execution_id: str, from_index: int | None = None) -> asyncio.Task[Execution | None]:
        """Run (or resume, with ``from_index``) as a background task."""
        existing = self._tasks.get(execution_id)
        if existing is not None and not existing.done():
            raise ExecutionBusyError(execution_id)

        coro = self.run(execution_id) if from_index is None else self.resume(execution_id, from_index)
        task = asyncio.create_task(self._limited(coro), name=f"execution:{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(functools.partial(self._task_done, execution_id))
        return task

    async def wait(self, execution_id: str) -> Execution | None:
        """Await the background task of an execution (if any) and return the record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            return await asyncio.shield(task)
        return self._store.get_execution(execution_id)

    async def drain(self) -> None:
        """Await every background task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Drain background work, then release executor resources."""
        await self.drain()
        self._registry.close()

    async def _limited(self, coro: Coroutine[Any, Any, Execution]) -> Execution:
        async with self._slots:
            return await coro

    def _task_done(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "engine.task.failed",
                execution_id=execution_id,
                error=str(error),
                error_type=type(error).__name__,
            )

    # =========================================================================
    # StepRunner
    # =========================================================================

    async def run_step(self, step: Step, context: ExecutionContext) -> StepExecutionResult:
        """Run one step (with retries) and return its final row."""
        state = self._runs[context.execution_id]
        index = context.step_indices[step.id]

        await context.log(
            LogLevel.INFO,
            f"Starting step: {step.name}",
            metadata={"step_id": step.id, "kind": step.kind.value},
            step_index=index,
        )
        logger.info("engine.step.start", step_id=step.id, kind=step.kind.value, step_index=index)

        if step.is_container:
            row, result = await self._attempt(step, context, index, attempt=1)
        else:
            retry = RetryContext(
                strategy_for(state.runbook.retry_policy, step.retry_count, step.retry_delay_ms)
            )
            attempt = 1
            while True:
                row, result = await self._attempt(step, context, index, attempt)
                if not result.failed or result.fatal:
                    break
                retry.record_failure(result.retry_class)
                if not retry.should_retry():
                    break
                delay = retry.next_delay()
                await context.log(
                    LogLevel.WARN,
                    f"Retrying step: {step.name} (attempt {attempt + 1}) in {delay:g}s",
                    metadata={"error": result.error, "code": result.error_code},
                    step_index=index,
                )
                logger.warning(
                    "engine.step.retry",
                    step_id=step.id,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=result.error,
                )
                await asyncio.sleep(delay)
                attempt += 1

        if row.succeeded:
            for name, value in result.context_updates.items():
                context.set_variable(name, value)
            await context.log(
                LogLevel.INFO,
                f"Step completed successfully: {step.name}",
                metadata={"duration_ms": row.duration_ms, "attempt": row.attempt_number},
                step_index=index,
            )
            logger.info("engine.step.complete", step_id=step.id, duration_ms=row.duration_ms)
        elif row.failed:
            await context.log(
                LogLevel.ERROR,
                f"Step failed: {step.name}",
                metadata={"error": result.error, "code": result.error_code},
                step_index=index,
            )
            logger.warning(
                "engine.step.failed",
                step_id=step.id,
                error=result.error,
                code=result.error_code,
                attempts=row.attempt_number,
            )
        return row

    async def run_sequence(
        self, steps: Sequence[Step], context: ExecutionContext
    ) -> tuple[bool, StepExecutionResult | None]:
        # An aborting failure leaves the later siblings without any row.
        for step in steps:
            self._check_active(context.execution_id)
            row = await self.run_step(step, context)
            if row.failed and (not step.continue_on_error or is_fatal_failure(row)):
                return False, row
        return True, None

    async def skip_steps(
        self, steps: Sequence[Step], context: ExecutionContext, reason: str
    ) -> None:
        pending = [s for s in iter_steps(steps) if s.id not in context.step_results]
        if not pending:
            return
        self._check_active(context.execution_id)

        now = utcnow()
        for step in pending:
            row = StepExecutionResult(
                execution_id=context.execution_id,
                step_index=context.step_indices[step.id],
                step_id=step.id,
                step_name=step.name,
                step_kind=step.kind.value,
                status=StepStatus.SKIPPED,
                started_at=now,
                finished_at=now,
                duration_ms=0,
                output=StepResult.skip(reason).output,
            )
            self._store.add_step_result(row)
            context.record_result(row)
        await context.log(
            LogLevel.DEBUG,
            f"Skipped {len(pending)} step(s): {reason}",
            metadata={"step_ids": [s.id for s in pending]},
        )

    # =========================================================================
    # Step attempts
    # =========================================================================

    async def _attempt(
        self, step: Step, context: ExecutionContext, index: int, attempt: int
    ) -> tuple[StepExecutionResult, StepResult]:
        started_at = utcnow()
        t0 = time.monotonic()
        try:
            result = await self._invoke(step, context)
        except _Stopped:
            raise
        except TimeoutExpired as e:
            self._record(step, context, index, attempt, _deadline_result(e.timeout), started_at, t0)
            raise
        except asyncio.CancelledError:
            # The runbook deadline cancels the task before it surfaces as TimeoutExpired.
            deadline = get_current_deadline()
            if deadline is not None and deadline.remaining() <= _DEADLINE_SLACK_SECONDS:
                result = _deadline_result(deadline.timeout_seconds)
                self._record(step, context, index, attempt, result, started_at, t0)
            raise
        except RunspineError as e:
            result = StepResult.from_error(e)
        except Exception as e:
            logger.exception("engine.step.unhandled_error", step_id=step.id)
            result = StepResult.from_error(e)

        self._check_active(context.execution_id)
        return self._record(step, context, index, attempt, result, started_at, t0), result

    def _record(
        self,
        step: Step,
        context: ExecutionContext,
        index: int,
        attempt: int,
        result: StepResult,
        started_at: datetime,
        t0: float,
    ) -> StepExecutionResult:
        row = StepExecutionResult(
            execution_id=context.execution_id,
            step_index=index,
            step_id=step.id,
            step_name=step.name,
            step_kind=step.kind.value,
            status=result.status,
            started_at=started_at,
            finished_at=None if result.paused else utcnow(),
            duration_ms=None if result.paused else int((time.monotonic() - t0) * 1000),
            input=result.input,
            output=result.output,
            error=result.step_error,
            attempt_number=attempt,
        )
        self._store.add_step_result(row)
        context.record_result(row)
        return row

    async def _invoke(self, step: Step, context: ExecutionContext) -> StepResult:
        executor = self._registry.get(step.kind)

        if step.is_container:
            # Containers get a timeout only when the step sets one; children have their own.
            if step.timeout_seconds is None:
                return await executor.execute(step, context)
            try:
                return await run_with_timeout_async(
                    executor.execute(step, context), step.timeout_seconds, operation=step.name
                )
            except StepTimeoutError:
                await self.skip_steps(step.children, context, "container step timed out")
                raise

        rendered = render_step(step, context.template_namespace())
        timeout = step.timeout_seconds or self._settings.default_step_timeout_seconds
        return await run_with_timeout_async(
            executor.execute(rendered, context), timeout, operation=step.name
        )

    # =========================================================================
    # Run loop
    # =========================================================================

    async def _advance(
        self, state: _RunState, context: ExecutionContext, from_index: int
    ) -> Execution:
        execution_id = context.execution_id
        runbook = state.runbook
        deadline = float(runbook.timeout_seconds or self._settings.default_runbook_timeout_seconds)

        try:
            async with with_deadline_async(deadline, operation=f"runbook {runbook.name}"):
                stopped_at = await self._run_top_level(state, context, from_index)
        except _Stopped:
            return await self._finish_stopped(execution_id)
        except TimeoutExpired:
            return await self._finish_failed(
                state,
                context,
                f"Runbook timeout after {deadline:g}s",
                error_step=state.current_index,
                timed_out=True,
            )
        except Exception as e:
            logger.exception("engine.run.unhandled_error")
            await self._finish_failed(state, context, str(e) or type(e).__name__, state.current_index)
            raise

        if stopped_at is None:
            return await self._finish_completed(state, context)
        if stopped_at.paused:
            return await self._pause(context, stopped_at)

        error = stopped_at.error
        message = f"Step '{stopped_at.step_name}' failed: {error.message if error else 'unknown error'}"
        return await self._finish_failed(
            state,
            context,
            message,
            error_step=stopped_at.step_index,
            timed_out=bool(error and error.code == "TIMEOUT"),
        )

    async def _run_top_level(
        self, state: _RunState, context: ExecutionContext, from_index: int
    ) -> StepExecutionResult | None:
        """Run top-level steps; returns the row that stopped the run, if any."""
        execution_id = context.execution_id
        for index, step in state.plan.top_level_from(from_index):
            self._check_active(execution_id)
            state.current_index = index

            if step.kind == StepKind.MANUAL:
                self._pausing.setdefault(execution_id, asyncio.Event())
            row = await self.run_step(step, context)
            if row.paused:
                return row
            self._release_pausing(execution_id)

            if row.failed and (not step.continue_on_error or is_fatal_failure(row)):
                return row

            next_index = index + state.plan.size_of(step)
            self._store.update_execution(execution_id, current_step_index=next_index)
            await self._publish(
                EXECUTION_PROGRESS,
                execution_id,
                {
                    "current_step_index": next_index,
                    "total_steps": state.plan.total,
                    "step_id": step.id,
                    "step_status": row.status.value,
                },
            )
        return None

    async def _pause(self, context: ExecutionContext, row: StepExecutionResult) -> Execution:
        execution_id = context.execution_id
        self._store.update_execution(
            execution_id,
            current_step_index=row.step_index,
            context_snapshot=context.snapshot(),
        )
        output = row.output or {}
        await context.log(
            LogLevel.INFO,
            f"Waiting for approval: {row.step_name}",
            metadata={"approval_id": output.get("approval_id"), "approvers": output.get("approvers")},
            step_index=row.step_index,
        )
        logger.info("engine.run.paused", step_id=row.step_id, approval_id=output.get("approval_id"))
        return self._get_execution(execution_id)

    async def _finish_completed(self, state: _RunState, context: ExecutionContext) -> Execution:
        execution_id = context.execution_id
        current = self._store.get_execution(execution_id)
        duration_ms = _duration_ms(current)
        if not self._store.transition_execution(
            execution_id,
            {ExecutionStatus.RUNNING},
            ExecutionStatus.SUCCESS,
            finished_at=utcnow(),
            duration_ms=duration_ms,
            current_step_index=state.plan.total,
            context_snapshot=context.snapshot(),
        ):
            return await self._finish_stopped(execution_id)

        await context.log(
            LogLevel.INFO,
            "Execution completed successfully",
            metadata={"duration_ms": duration_ms},
        )
        logger.info("engine.run.complete", duration_ms=duration_ms, total_steps=state.plan.total)
        await self._publish(
            EXECUTION_COMPLETED,
            execution_id,
            {"duration_ms": duration_ms, "total_steps": state.plan.total},
        )
        return self._get_execution(execution_id)

    async def _finish_failed(
        self,
        state: _RunState,
        context: ExecutionContext,
        message: str,
        error_step: int | None,
        timed_out: bool = False,
    ) -> Execution:
        execution_id = context.execution_id
        try:
            await self._rollback(state, context, timed_out)
        except _Stopped:
            return await self._finish_stopped(execution_id)

        current = self._store.get_execution(execution_id)
        if not self._store.transition_execution(
            execution_id,
            {ExecutionStatus.RUNNING},
            ExecutionStatus.FAILED,
            finished_at=utcnow(),
            duration_ms=_duration_ms(current),
            error_message=message,
            error_step=error_step,
            context_snapshot=context.snapshot(),
        ):
            return await self._finish_stopped(execution_id)

        await context.log(
            LogLevel.ERROR,
            f"Execution failed: {message}",
            metadata={"error_step": error_step},
            step_index=error_step,
        )
        logger.error("engine.run.failed", error=message, error_step=error_step)
        await self._publish(
            EXECUTION_FAILED,
            execution_id,
            {"error": message, "error_step": error_step},
        )
        return self._get_execution(execution_id)

    async def _finish_stopped(self, execution_id: str) -> Execution:
        execution = self._get_execution(execution_id)
        if execution.status == ExecutionStatus.CANCELLED:
            logger.info("engine.run.cancelled", current_step_index=execution.current_step_index)
            await self._publish(
                EXECUTION_CANCELLED,
                execution_id,
                {"current_step_index": execution.current_step_index},
            )
        return execution

    async def _rollback(self, state: _RunState, context: ExecutionContext, timed_out: bool) -> None:
        config = state.rollback
        if not config.enabled:
            return
        triggers = set(config.trigger_on)
        if RollbackTrigger.FAILURE not in triggers and not (
            timed_out and RollbackTrigger.TIMEOUT in triggers
        ):
            return

        await context.log(
            LogLevel.WARN,
            "Starting rollback",
            metadata={"steps": [s.id for s in config.steps]},
        )
        logger.warning("engine.rollback.start", steps=len(config.steps))
        failed = 0
        for step in config.steps:
            row = await self.run_step(step, context)
            if row.failed:
                failed += 1
        level = LogLevel.WARN if failed else LogLevel.INFO
        await context.log(level, f"Rollback finished: {failed} of {len(config.steps)} step(s) failed")
        logger.info("engine.rollback.complete", failed=failed)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_execution(self, execution_id: str) -> Execution:
        execution = self._store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def _check_active(self, execution_id: str) -> None:
        execution = self._store.get_execution(execution_id)
        if execution is None or execution.is_terminal:
            raise _Stopped(execution_id)

    async def _load(self, execution: Execution, expected: ExecutionStatus) -> _RunState:
        """Load and parse the runbook; a broken runbook fails the execution."""
        try:
            runbook = self._store.get_runbook(execution.runbook_id)
            if runbook is None:
                raise RunbookNotFoundError(execution.runbook_id)
            steps, rollback_steps = parse_steps(runbook.steps, runbook.rollback_steps)
        except (RunbookNotFoundError, ConfigurationError) as e:
            await self._fail_unloadable(execution, expected, e.message)
            raise

        plan = StepPlan(steps)
        state = _RunState(
            runbook=runbook,
            plan=plan,
            rollback=rollback_config(runbook, rollback_steps),
            rollback_plan=StepPlan(rollback_steps, offset=plan.total),
        )
        self._runs[execution.id] = state
        return state

    async def _fail_unloadable(
        self, execution: Execution, expected: ExecutionStatus, message: str
    ) -> None:
        if not self._store.transition_execution(
            execution.id,
            {expected},
            ExecutionStatus.FAILED,
            finished_at=utcnow(),
            duration_ms=_duration_ms(execution),
            error_message=message,
        ):
            return
        context = ExecutionContext(
            execution_id=execution.id,
            runbook_id=execution.runbook_id,
            store=self._store,
            event_bus=self._event_bus,
            environment=execution.environment,
        )
        await context.log(LogLevel.ERROR, f"Execution failed: {message}")
        logger.error("engine.run.failed", error=message)
        await self._publish(EXECUTION_FAILED, execution.id, {"error": message, "error_step": None})

    def _build_context(
        self,
        execution: Execution,
        state: _RunState,
        results: dict[str, StepExecutionResult] | None = None,
        variables: dict[str, Any] | None = None,
    ) -> ExecutionContext:
        runbook = state.runbook
        parameters = {d.name: d.default for d in runbook.parameters if d.default is not None}
        parameters.update(execution.input_params)
        merged_variables = runbook.default_variables
        merged_variables.update(variables or {})

        return ExecutionContext(
            execution_id=execution.id,
            runbook_id=runbook.id,
            store=self._store,
            event_bus=self._event_bus,
            environment=execution.environment,
            triggered_by=execution.triggered_by,
            started_at=execution.started_at or utcnow(),
            parameters=parameters,
            variables=merged_variables,
            secrets=resolve_execution_secrets(
                self._store, runbook.id, execution.environment, self._secret_backends
            ),
            step_results=dict(results or {}),
            step_indices={**state.plan.indices, **state.rollback_plan.indices},
        )

    @contextmanager
    def _owning(self, execution_id: str) -> Iterator[None]:
        if execution_id in self._owned:
            raise ExecutionBusyError(execution_id)
        self._owned.add(execution_id)
        try:
            yield
        finally:
            self._owned.discard(execution_id)
            self._release_pausing(execution_id)

    def _release_pausing(self, execution_id: str) -> None:
        event = self._pausing.pop(execution_id, None)
        if event is not None:
            event.set()

    async def _publish(
        self, event_type: str, execution_id: str, payload: dict[str, Any] | None = None
    ) -> None:
        await self._event_bus.publish(
            ExecutionEvent(event_type, execution_id=execution_id, payload=payload or {})
        )


__all__ = ["ExecutionEngine"]
