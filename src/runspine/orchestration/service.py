"""Runbook Service — trigger, cancel and inspect executions.

The service is the entry point for the outside world (API handlers,
deployment hooks, schedulers, the CLI):

- :meth:`RunbookService.start_execution` validates inputs, creates the
  QUEUED execution and hands it to the engine (background by default)
- :meth:`RunbookService.cancel` stops a QUEUED or RUNNING execution
- :meth:`RunbookService.history` is the read path for late observers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from runspine.core.errors import ExecutionNotFoundError, ExecutionStateError, RunbookNotFoundError
from runspine.core.events import EXECUTION_CANCELLED, EventBus, ExecutionEvent
from runspine.core.logging import get_logger
from runspine.core.store import RunbookStore
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.engine import ExecutionEngine
from runspine.orchestration.models import (
    Approval,
    ApprovalStatus,
    Environment,
    Execution,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    RunbookStatus,
    StepExecutionResult,
    StepStatus,
    TriggerType,
    utcnow,
)
from runspine.orchestration.parameters import validate_parameters
from runspine.orchestration.runbook_spec import parse_steps
from runspine.orchestration.step_types import count_steps

logger = get_logger(__name__)


@dataclass
class ExecutionHistory:
    """Everything recorded about one execution."""

    execution: Execution
    step_results: list[StepExecutionResult] = field(default_factory=list)
    logs: list[LogEntry] = field(default_factory=list)
    approvals: list[Approval] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution": self.execution.to_dict(),
            "step_results": [r.to_dict() for r in self.step_results],
            "logs": [entry.to_dict() for entry in self.logs],
            "approvals": [a.to_dict() for a in self.approvals],
        }


class RunbookService:
    """
    Starts and controls executions.

    Example:
        service = RunbookService(store, bus, engine)
        execution_id = await service.start_execution(
            runbook.id, {"region": "eu"}, triggered_by="alice"
        )
        await engine.wait(execution_id)
        print(service.history(execution_id).execution.status)
    """

    def __init__(self, store: RunbookStore, event_bus: EventBus, engine: ExecutionEngine) -> None:
        self._store = store
        self._event_bus = event_bus
        self._engine = engine

    async def start_execution(
        self,
        runbook_id: str,
        params: dict[str, Any] | None = None,
        environment: Environment | str | None = None,
        triggered_by: str = "system",
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        *,
        wait: bool = False,
    ) -> str:
        """Create an execution and start it.

        Returns as soon as the execution is queued unless ``wait=True``,
        in which case the first engine call (up to completion, failure or
        the first approval pause) is awaited.

        Raises:
            RunbookNotFoundError: Unknown runbook
            ExecutionStateError: Runbook is archived
            ParameterValidationError: Inputs do not match the declarations
            RunbookValidationError: Stored step document does not parse
        """
        runbook = self._store.get_runbook(runbook_id)
        if runbook is None:
            raise RunbookNotFoundError(runbook_id)
        if runbook.status == RunbookStatus.ARCHIVED:
            raise ExecutionStateError(f"Runbook {runbook.name} is archived")

        resolved = validate_parameters(runbook.parameters, params)
        steps, _ = parse_steps(runbook.steps, runbook.rollback_steps)

        execution = self._store.create_execution(
            Execution(
                runbook_id=runbook.id,
                runbook_version=runbook.version,
                triggered_by=triggered_by,
                trigger_type=TriggerType(trigger_type),
                environment=Environment(environment) if environment else runbook.environment,
                input_params=resolved,
                total_steps=count_steps(steps),
            )
        )
        logger.info(
            "service.execution_created",
            execution_id=execution.id,
            runbook_id=runbook.id,
            triggered_by=triggered_by,
            trigger_type=execution.trigger_type.value,
        )

        if wait:
            await self._engine.run(execution.id)
        else:
            self._engine.start(execution.id)
        return execution.id

    async def cancel(self, execution_id: str, cancelled_by: str | None = None) -> Execution:
        """Cancel a QUEUED or RUNNING execution.

        A running engine call stops at its next step boundary.  A paused
        MANUAL step row becomes CANCELLED and its pending approval expires.

        Raises:
            ExecutionNotFoundError: Unknown execution
            ExecutionStateError: Execution already finished
        """
        execution = self.get_execution(execution_id)
        now = utcnow()
        duration_ms = (
            int((now - execution.started_at).total_seconds() * 1000) if execution.started_at else None
        )
        if not self._store.transition_execution(
            execution_id,
            {ExecutionStatus.QUEUED, ExecutionStatus.RUNNING},
            ExecutionStatus.CANCELLED,
            finished_at=now,
            duration_ms=duration_ms,
        ):
            current = self.get_execution(execution_id)
            raise ExecutionStateError(
                f"Cannot cancel execution {execution_id}: status is {current.status.value}"
            )

        for row in self._store.list_step_results(execution_id):
            if row.status == StepStatus.PAUSED:
                self._store.update_step_results(
                    execution_id,
                    row.step_index,
                    StepStatus.PAUSED,
                    status=StepStatus.CANCELLED,
                    finished_at=now,
                )
        for approval in self._store.list_approvals(
            execution_id=execution_id, status=ApprovalStatus.PENDING
        ):
            self._store.transition_approval(
                approval.id,
                {ApprovalStatus.PENDING},
                ApprovalStatus.EXPIRED,
                responded_at=now,
                response_note="execution cancelled",
            )

        context = ExecutionContext(
            execution_id=execution_id,
            runbook_id=execution.runbook_id,
            store=self._store,
            event_bus=self._event_bus,
            environment=execution.environment,
        )
        by = f" by {cancelled_by}" if cancelled_by else ""
        await context.log(LogLevel.WARN, f"Execution cancelled{by}")
        logger.info("service.execution_cancelled", execution_id=execution_id, cancelled_by=cancelled_by)

        # An active engine call publishes the event when it notices.
        if not self._engine.is_active(execution_id):
            await self._event_bus.publish(
                ExecutionEvent(
                    EXECUTION_CANCELLED,
                    execution_id=execution_id,
                    payload={"current_step_index": execution.current_step_index},
                )
            )
        return self.get_execution(execution_id)

    # =========================================================================
    # Read path
    # =========================================================================

    def get_execution(self, execution_id: str) -> Execution:
        execution = self._store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def list_executions(
        self,
        *,
        runbook_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        return self._store.list_executions(runbook_id=runbook_id, status=status)

    def history(self, execution_id: str) -> ExecutionHistory:
        return ExecutionHistory(
            execution=self.get_execution(execution_id),
            step_results=self._store.list_step_results(execution_id),
            logs=self._store.list_logs(execution_id),
            approvals=self._store.list_approvals(execution_id=execution_id),
        )


__all__ = ["ExecutionHistory", "RunbookService"]
