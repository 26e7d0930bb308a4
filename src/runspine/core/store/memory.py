"""In-memory implementation of :class:`~runspine.core.store.RunbookStore`.

Records are deep-copied on the way in and out so callers can never
mutate stored state behind the store's back, mirroring what a database
round-trip gives you.  A single lock makes every operation atomic, which
is what the compare-and-set methods rely on.

Tags:
    runspine, store, in-memory, testing
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Collection
from typing import Any, TypeVar

from runspine.core.errors import RecordNotFoundError, StoreError
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
    utcnow,
)

__all__ = ["InMemoryStore"]

R = TypeVar("R")


def _apply(record: Any, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if not hasattr(record, key):
            raise StoreError(f"Unknown field for {type(record).__name__}: {key}")
        setattr(record, key, copy.deepcopy(value))


class InMemoryStore:
    """Dict-backed store for tests, the CLI and single-process use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runbooks: dict[str, Runbook] = {}
        self._executions: dict[str, Execution] = {}
        self._results: dict[str, list[StepExecutionResult]] = {}
        self._approvals: dict[str, Approval] = {}
        self._logs: dict[str, list[LogEntry]] = {}
        self._secrets: list[Secret] = []
        self._sequence = itertools.count(1)

    @staticmethod
    def _copy(record: R) -> R:
        return copy.deepcopy(record)

    # ── Runbooks ─────────────────────────────────────────────────────────

    def create_runbook(self, runbook: Runbook) -> Runbook:
        with self._lock:
            if runbook.id in self._runbooks:
                raise StoreError(f"Runbook already exists: {runbook.id}")
            self._runbooks[runbook.id] = self._copy(runbook)
            return self._copy(runbook)

    def get_runbook(self, runbook_id: str) -> Runbook | None:
        with self._lock:
            runbook = self._runbooks.get(runbook_id)
            return self._copy(runbook) if runbook else None

    def update_runbook(self, runbook_id: str, **fields: Any) -> Runbook:
        with self._lock:
            runbook = self._runbooks.get(runbook_id)
            if runbook is None:
                raise RecordNotFoundError("Runbook", runbook_id)
            _apply(runbook, {"updated_at": utcnow(), **fields})
            return self._copy(runbook)

    def list_runbooks(self, *, name: str | None = None, latest_only: bool = False) -> list[Runbook]:
        with self._lock:
            runbooks = [
                rb for rb in self._runbooks.values()
                if (name is None or rb.name == name) and (not latest_only or rb.is_latest)
            ]
            runbooks.sort(key=lambda rb: (rb.created_at, rb.version))
            return [self._copy(rb) for rb in runbooks]

    # ── Executions ───────────────────────────────────────────────────────

    def create_execution(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id in self._executions:
                raise StoreError(f"Execution already exists: {execution.id}")
            self._executions[execution.id] = self._copy(execution)
            return self._copy(execution)

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return self._copy(execution) if execution else None

    def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        if "status" in fields:
            raise StoreError("Use transition_execution to change execution status")
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise RecordNotFoundError("Execution", execution_id)
            _apply(execution, fields)
            return self._copy(execution)

    def transition_execution(
        self,
        execution_id: str,
        expected: Collection[ExecutionStatus],
        new_status: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise RecordNotFoundError("Execution", execution_id)
            if execution.status not in expected:
                return False
            _apply(execution, {"status": new_status, **fields})
            return True

    def list_executions(
        self,
        *,
        runbook_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        with self._lock:
            executions = [
                e for e in self._executions.values()
                if (runbook_id is None or e.runbook_id == runbook_id)
                and (status is None or e.status == status)
            ]
            executions.sort(key=lambda e: e.created_at)
            return [self._copy(e) for e in executions]

    # ── Step results ─────────────────────────────────────────────────────

    def add_step_result(self, result: StepExecutionResult) -> StepExecutionResult:
        with self._lock:
            self._results.setdefault(result.execution_id, []).append(self._copy(result))
            return self._copy(result)

    def update_step_results(
        self,
        execution_id: str,
        step_index: int,
        from_status: StepStatus,
        **fields: Any,
    ) -> int:
        with self._lock:
            count = 0
            for row in self._results.get(execution_id, []):
                if row.step_index == step_index and row.status == from_status:
                    _apply(row, fields)
                    count += 1
            return count

    def list_step_results(self, execution_id: str) -> list[StepExecutionResult]:
        with self._lock:
            rows = sorted(
                self._results.get(execution_id, []),
                key=lambda r: (r.step_index, r.attempt_number),
            )
            return [self._copy(r) for r in rows]

    # ── Approvals ────────────────────────────────────────────────────────

    def create_approval(self, approval: Approval) -> Approval:
        with self._lock:
            for existing in self._approvals.values():
                if (
                    existing.execution_id == approval.execution_id
                    and existing.step_index == approval.step_index
                    and existing.status == ApprovalStatus.PENDING
                ):
                    raise StoreError(
                        f"Approval already pending for execution {approval.execution_id} "
                        f"step {approval.step_index}"
                    )
            self._approvals[approval.id] = self._copy(approval)
            return self._copy(approval)

    def get_approval(self, approval_id: str) -> Approval | None:
        with self._lock:
            approval = self._approvals.get(approval_id)
            return self._copy(approval) if approval else None

    def update_approval(self, approval_id: str, **fields: Any) -> Approval:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise RecordNotFoundError("Approval", approval_id)
            _apply(approval, fields)
            return self._copy(approval)

    def transition_approval(
        self,
        approval_id: str,
        expected: Collection[ApprovalStatus],
        new_status: ApprovalStatus,
        **fields: Any,
    ) -> bool:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise RecordNotFoundError("Approval", approval_id)
            if approval.status not in expected:
                return False
            _apply(approval, {"status": new_status, **fields})
            return True

    def list_approvals(
        self,
        *,
        execution_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[Approval]:
        with self._lock:
            approvals = [
                a for a in self._approvals.values()
                if (execution_id is None or a.execution_id == execution_id)
                and (status is None or a.status == status)
            ]
            approvals.sort(key=lambda a: a.requested_at)
            return [self._copy(a) for a in approvals]

    # ── Logs ─────────────────────────────────────────────────────────────

    def add_log(self, entry: LogEntry) -> LogEntry:
        with self._lock:
            stored = self._copy(entry)
            stored.sequence = next(self._sequence)
            self._logs.setdefault(entry.execution_id, []).append(stored)
            return self._copy(stored)

    def list_logs(self, execution_id: str) -> list[LogEntry]:
        with self._lock:
            entries = sorted(
                self._logs.get(execution_id, []),
                key=lambda e: (e.timestamp, e.sequence),
            )
            return [self._copy(e) for e in entries]

    # ── Secrets ──────────────────────────────────────────────────────────

    def add_secret(self, secret: Secret) -> Secret:
        with self._lock:
            self._secrets.append(self._copy(secret))
            return self._copy(secret)

    def list_secrets(self, environment: Environment, runbook_id: str | None = None) -> list[Secret]:
        with self._lock:
            return [
                self._copy(s) for s in self._secrets
                if s.environment == environment
                and (s.runbook_id is None or s.runbook_id == runbook_id)
            ]
