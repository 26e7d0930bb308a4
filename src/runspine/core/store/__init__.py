"""Runbook store contract.

The engine, approval coordinator and service only need a narrow set of
single-record operations from persistence.  ``RunbookStore`` spells them
out; two implementations ship with the package:

memory      InMemoryStore -- dict-backed, thread-safe, used by tests and the CLI
sql         SqlStore      -- SQLAlchemy ORM (SQLite / PostgreSQL ...)

Status changes go through compare-and-set methods
(``transition_execution`` / ``transition_approval`` /
``update_step_results``) so that concurrent writers (a running engine, a
cancel call, an approval) never overwrite each other's terminal state.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Any, Protocol, runtime_checkable

from runspine.orchestration.models import (
    Approval,
    ApprovalStatus,
    Environment,
    Execution,
    ExecutionStatus,
    LogEntry,
    Runbook,
    Secret,
    StepExecutionResult,
    StepStatus,
)

__all__ = ["RunbookStore"]


@runtime_checkable
class RunbookStore(Protocol):
    """Persistence operations consumed by the engine."""

    # ── Runbooks ─────────────────────────────────────────────────────────

    def create_runbook(self, runbook: Runbook) -> Runbook: ...

    def get_runbook(self, runbook_id: str) -> Runbook | None: ...

    def update_runbook(self, runbook_id: str, **fields: Any) -> Runbook:
        """Update fields of a runbook; raises ``RecordNotFoundError``."""
        ...

    def list_runbooks(self, *, name: str | None = None, latest_only: bool = False) -> list[Runbook]: ...

    # ── Executions ───────────────────────────────────────────────────────

    def create_execution(self, execution: Execution) -> Execution: ...

    def get_execution(self, execution_id: str) -> Execution | None: ...

    def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        """Update non-status fields; raises ``RecordNotFoundError``."""
        ...

    def transition_execution(
        self,
        execution_id: str,
        expected: Collection[ExecutionStatus],
        new_status: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        """Set ``status`` (and ``fields``) only if the current status is in ``expected``."""
        ...

    def list_executions(
        self,
        *,
        runbook_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]: ...

    # ── Step results ─────────────────────────────────────────────────────

    def add_step_result(self, result: StepExecutionResult) -> StepExecutionResult: ...

    def update_step_results(
        self,
        execution_id: str,
        step_index: int,
        from_status: StepStatus,
        **fields: Any,
    ) -> int:
        """Update rows of one step currently in ``from_status``; returns the row count."""
        ...

    def list_step_results(self, execution_id: str) -> list[StepExecutionResult]:
        """Rows ordered by (step_index, attempt_number)."""
        ...

    # ── Approvals ────────────────────────────────────────────────────────

    def create_approval(self, approval: Approval) -> Approval:
        """Raises ``StoreError`` if a PENDING approval already exists for the step."""
        ...

    def get_approval(self, approval_id: str) -> Approval | None: ...

    def update_approval(self, approval_id: str, **fields: Any) -> Approval: ...

    def transition_approval(
        self,
        approval_id: str,
        expected: Collection[ApprovalStatus],
        new_status: ApprovalStatus,
        **fields: Any,
    ) -> bool: ...

    def list_approvals(
        self,
        *,
        execution_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[Approval]: ...

    # ── Logs ─────────────────────────────────────────────────────────────

    def add_log(self, entry: LogEntry) -> LogEntry:
        """Append a log line, assigning its ``sequence``."""
        ...

    def list_logs(self, execution_id: str) -> list[LogEntry]:
        """Lines ordered by (timestamp, sequence)."""
        ...

    # ── Secrets ──────────────────────────────────────────────────────────

    def add_secret(self, secret: Secret) -> Secret: ...

    def list_secrets(self, environment: Environment, runbook_id: str | None = None) -> list[Secret]:
        """Shared secrets of ``environment`` plus those of ``runbook_id``."""
        ...
