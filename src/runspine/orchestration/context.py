"""
Execution Context - state shared by the steps of one execution.

One ``ExecutionContext`` is built per engine call (``run`` or ``resume``)
and handed to every executor.  It carries the execution's identity, its
resolved inputs (parameters, variables, secrets) and the latest result of
every step that has run so far, which is what conditions and templates
read.

Unlike the rest of the engine's records, the context is mutable: results
are added as steps finish and ``set_variable`` writes are visible to the
next step immediately.  Variables are only persisted when the engine
checkpoints them (on pause and at completion) into
``Execution.context_snapshot``.

Example:
    async def execute(self, step, context):
        region = context.parameters["region"]
        previous = context.get_step_result("drain")
        await context.log(LogLevel.INFO, f"Draining {region}")
        context.set_variable("drained_at", utcnow().isoformat())

Tags:
    runspine, orchestration, context, shared-state

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from runspine.core.events import LOG, EventBus, ExecutionEvent
from runspine.core.store import RunbookStore
from runspine.orchestration.models import (
    Environment,
    LogEntry,
    LogLevel,
    StepExecutionResult,
    utcnow,
)


@dataclass
class ExecutionContext:
    """
    Per-execution state handed to every step executor.

    Attributes:
        execution_id: Execution being advanced
        runbook_id: Runbook being executed
        environment: Target environment of the execution
        triggered_by: User or system that started the execution
        started_at: When the execution started
        parameters: Input parameters merged over declared defaults
        variables: Runbook variables (mutable during the run)
        secrets: Secrets resolved once for runbook + environment
        step_results: Latest result per step id
        step_indices: Flat index of every step (main tree and rollback)
    """

    execution_id: str
    runbook_id: str
    store: RunbookStore = field(repr=False)
    event_bus: EventBus = field(repr=False)
    environment: Environment = Environment.DEVELOPMENT
    triggered_by: str = "system"
    started_at: datetime = field(default_factory=utcnow)
    parameters: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict, repr=False)
    step_results: dict[str, StepExecutionResult] = field(default_factory=dict)
    step_indices: dict[str, int] = field(default_factory=dict, repr=False)

    # =========================================================================
    # Step results
    # =========================================================================

    def get_step_result(self, step_id: str) -> StepExecutionResult | None:
        return self.step_results.get(step_id)

    def record_result(self, result: StepExecutionResult) -> None:
        """Make ``result`` the latest result of its step."""
        self.step_results[result.step_id] = result

    # =========================================================================
    # Variables
    # =========================================================================

    def set_variable(self, name: str, value: Any) -> None:
        """Set a variable for the remaining steps (memory only until checkpoint)."""
        self.variables[name] = value

    def snapshot(self) -> dict[str, Any]:
        """Checkpoint payload stored in ``Execution.context_snapshot``."""
        return {"variables": dict(self.variables)}

    # =========================================================================
    # Logging
    # =========================================================================

    async def log(
        self,
        level: LogLevel | str,
        message: str,
        metadata: dict[str, Any] | None = None,
        step_index: int | None = None,
    ) -> LogEntry:
        """Append a line to the execution's audit log and publish a ``log`` event."""
        entry = self.store.add_log(
            LogEntry(
                execution_id=self.execution_id,
                level=LogLevel(level),
                message=message,
                step_index=step_index,
                metadata=metadata,
            )
        )
        await self.event_bus.publish(
            ExecutionEvent(LOG, execution_id=self.execution_id, payload=entry.to_dict())
        )
        return entry

    def logs(self) -> list[LogEntry]:
        return self.store.list_logs(self.execution_id)

    # =========================================================================
    # Templating
    # =========================================================================

    def template_namespace(self) -> dict[str, Any]:
        """Names available to ``{{ ... }}`` templates in step configs."""
        return {
            "params": self.parameters,
            "variables": self.variables,
            "secrets": self.secrets,
            "steps": {
                step_id: {
                    "status": result.status.value,
                    "output": result.output or {},
                    "error": result.error.message if result.error else None,
                }
                for step_id, result in self.step_results.items()
            },
            "execution": {
                "id": self.execution_id,
                "runbook_id": self.runbook_id,
                "environment": self.environment.value,
                "triggered_by": self.triggered_by,
            },
        }
