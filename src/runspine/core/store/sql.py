"""SQLAlchemy implementation of :class:`~runspine.core.store.RunbookStore`.

Every public method runs in its own short session/transaction.  Status
compare-and-set is a single ``UPDATE ... WHERE status IN (...)`` whose
row count decides the outcome, so it stays atomic across processes.

Usage::

    from runspine.core.orm import create_runspine_engine
    from runspine.core.store.sql import SqlStore

    store = SqlStore(create_runspine_engine("sqlite:///runspine.db"))
    store.create_all()

Tags:
    runspine, store, sqlalchemy, orm
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from runspine.core.errors import RecordNotFoundError, StoreError
from runspine.core.logging import get_logger
from runspine.core.orm import (
    ApprovalTable,
    ExecutionTable,
    LogTable,
    RunbookTable,
    RunspineBase,
    SecretTable,
    StepResultTable,
    runspine_session_factory,
)
from runspine.orchestration.models import (
    Approval,
    ApprovalStatus,
    BackoffStrategy,
    Environment,
    Execution,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    ParameterDeclaration,
    RetryOn,
    RetryPolicy,
    Runbook,
    RunbookStatus,
    Secret,
    StepError,
    StepExecutionResult,
    StepStatus,
    TriggerType,
    VariableDeclaration,
    utcnow,
)

__all__ = ["SqlStore"]

logger = get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# =============================================================================
# Row <-> record conversion
# =============================================================================


def _runbook_to_row(rb: Runbook, row: RunbookTable) -> RunbookTable:
    row.id = rb.id
    row.name = rb.name
    row.description = rb.description
    row.environment = rb.environment.value
    row.status = rb.status.value
    row.steps = rb.steps
    row.parameters = [{**p.__dict__, "options": list(p.options)} for p in rb.parameters]
    row.variables = [dict(v.__dict__) for v in rb.variables]
    row.timeout_seconds = rb.timeout_seconds
    row.retry_policy = rb.retry_policy.to_dict() if rb.retry_policy else None
    row.rollback_steps = rb.rollback_steps
    row.rollback_trigger_on = list(rb.rollback_trigger_on)
    row.tags = list(rb.tags)
    row.owner_id = rb.owner_id
    row.version = rb.version
    row.is_latest = rb.is_latest
    row.parent_id = rb.parent_id
    row.created_at = rb.created_at
    row.updated_at = rb.updated_at
    return row


def _runbook_from_row(row: RunbookTable) -> Runbook:
    policy = None
    if row.retry_policy:
        data = row.retry_policy
        policy = RetryPolicy(
            max_attempts=data["max_attempts"],
            backoff_strategy=BackoffStrategy(data["backoff_strategy"]),
            initial_delay_ms=data["initial_delay_ms"],
            max_delay_ms=data.get("max_delay_ms"),
            retry_on=tuple(RetryOn(r) for r in data.get("retry_on", [])),
        )
    return Runbook(
        id=row.id,
        name=row.name,
        description=row.description,
        environment=Environment(row.environment),
        status=RunbookStatus(row.status),
        steps=list(row.steps or []),
        parameters=[
            ParameterDeclaration(**{**p, "options": tuple(p.get("options", ()))})
            for p in row.parameters or []
        ],
        variables=[VariableDeclaration(**v) for v in row.variables or []],
        timeout_seconds=row.timeout_seconds,
        retry_policy=policy,
        rollback_steps=list(row.rollback_steps or []),
        rollback_trigger_on=list(row.rollback_trigger_on or []),
        tags=list(row.tags or []),
        owner_id=row.owner_id,
        version=row.version,
        is_latest=bool(row.is_latest),
        parent_id=row.parent_id,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _execution_to_row(e: Execution, row: ExecutionTable) -> ExecutionTable:
    row.id = e.id
    row.runbook_id = e.runbook_id
    row.runbook_version = e.runbook_version
    row.status = e.status.value
    row.triggered_by = e.triggered_by
    row.trigger_type = e.trigger_type.value
    row.environment = e.environment.value
    row.input_params = e.input_params
    row.current_step_index = e.current_step_index
    row.total_steps = e.total_steps
    row.started_at = e.started_at
    row.finished_at = e.finished_at
    row.duration_ms = e.duration_ms
    row.error_message = e.error_message
    row.error_step = e.error_step
    row.context_snapshot = e.context_snapshot
    row.created_at = e.created_at
    return row


def _execution_from_row(row: ExecutionTable) -> Execution:
    return Execution(
        id=row.id,
        runbook_id=row.runbook_id,
        runbook_version=row.runbook_version,
        status=ExecutionStatus(row.status),
        triggered_by=row.triggered_by,
        trigger_type=TriggerType(row.trigger_type),
        environment=Environment(row.environment),
        input_params=dict(row.input_params or {}),
        current_step_index=row.current_step_index,
        total_steps=row.total_steps,
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        duration_ms=row.duration_ms,
        error_message=row.error_message,
        error_step=row.error_step,
        context_snapshot=dict(row.context_snapshot or {}),
        created_at=_aware(row.created_at),
    )


def _result_to_row(r: StepExecutionResult, row: StepResultTable) -> StepResultTable:
    row.id = r.id
    row.execution_id = r.execution_id
    row.step_index = r.step_index
    row.step_id = r.step_id
    row.step_name = r.step_name
    row.step_kind = r.step_kind
    row.status = r.status.value
    row.started_at = r.started_at
    row.finished_at = r.finished_at
    row.duration_ms = r.duration_ms
    row.input = r.input
    row.output = r.output
    row.error = r.error.to_dict() if r.error else None
    row.attempt_number = r.attempt_number
    return row


def _result_from_row(row: StepResultTable) -> StepExecutionResult:
    return StepExecutionResult(
        id=row.id,
        execution_id=row.execution_id,
        step_index=row.step_index,
        step_id=row.step_id,
        step_name=row.step_name,
        step_kind=row.step_kind,
        status=StepStatus(row.status),
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        duration_ms=row.duration_ms,
        input=row.input,
        output=row.output,
        error=StepError(**row.error) if row.error else None,
        attempt_number=row.attempt_number,
    )


def _approval_to_row(a: Approval, row: ApprovalTable) -> ApprovalTable:
    row.id = a.id
    row.execution_id = a.execution_id
    row.step_index = a.step_index
    row.step_id = a.step_id
    row.step_name = a.step_name
    row.required_approvers = list(a.required_approvers)
    row.require_all = a.require_all
    row.approved_by = list(a.approved_by)
    row.status = a.status.value
    row.requested_at = a.requested_at
    row.responded_at = a.responded_at
    row.expires_at = a.expires_at
    row.request_note = a.request_note
    row.response_note = a.response_note
    row.responder = a.responder
    return row


def _approval_from_row(row: ApprovalTable) -> Approval:
    return Approval(
        id=row.id,
        execution_id=row.execution_id,
        step_index=row.step_index,
        step_id=row.step_id,
        step_name=row.step_name,
        required_approvers=list(row.required_approvers or []),
        require_all=bool(row.require_all),
        approved_by=list(row.approved_by or []),
        status=ApprovalStatus(row.status),
        requested_at=_aware(row.requested_at),
        responded_at=_aware(row.responded_at),
        expires_at=_aware(row.expires_at),
        request_note=row.request_note,
        response_note=row.response_note,
        responder=row.responder,
    )


def _log_from_row(row: LogTable) -> LogEntry:
    return LogEntry(
        id=row.id,
        sequence=row.sequence,
        execution_id=row.execution_id,
        step_index=row.step_index,
        level=LogLevel(row.level),
        message=row.message,
        metadata=row.metadata_,
        timestamp=_aware(row.timestamp),
    )


def _secret_from_row(row: SecretTable) -> Secret:
    return Secret(
        id=row.id,
        name=row.name,
        value=row.value,
        environment=Environment(row.environment),
        runbook_id=row.runbook_id,
        created_at=_aware(row.created_at),
    )


def _apply(record: Any, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if not hasattr(record, key):
            raise StoreError(f"Unknown field for {type(record).__name__}: {key}")
        setattr(record, key, value)


# =============================================================================
# Store
# =============================================================================


class SqlStore:
    """Store backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = runspine_session_factory(engine)

    def create_all(self) -> None:
        """Create all runspine tables (idempotent)."""
        RunspineBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory.begin()

    def _add(self, row: Any) -> None:
        try:
            with self._session() as session:
                session.add(row)
        except SQLAlchemyError as e:
            logger.error("store.write_failed", table=row.__tablename__, error=str(e))
            raise StoreError(f"Failed to write {row.__tablename__}: {e}", cause=e) from e

    # ── Runbooks ─────────────────────────────────────────────────────────

    def create_runbook(self, runbook: Runbook) -> Runbook:
        self._add(_runbook_to_row(runbook, RunbookTable()))
        return runbook

    def get_runbook(self, runbook_id: str) -> Runbook | None:
        with self._session() as session:
            row = session.get(RunbookTable, runbook_id)
            return _runbook_from_row(row) if row else None

    def update_runbook(self, runbook_id: str, **fields: Any) -> Runbook:
        with self._session() as session:
            row = session.get(RunbookTable, runbook_id)
            if row is None:
                raise RecordNotFoundError("Runbook", runbook_id)
            runbook = _runbook_from_row(row)
            _apply(runbook, {"updated_at": utcnow(), **fields})
            _runbook_to_row(runbook, row)
            return runbook

    def list_runbooks(self, *, name: str | None = None, latest_only: bool = False) -> list[Runbook]:
        stmt = select(RunbookTable).order_by(RunbookTable.created_at, RunbookTable.version)
        if name is not None:
            stmt = stmt.where(RunbookTable.name == name)
        if latest_only:
            stmt = stmt.where(RunbookTable.is_latest.is_(True))
        with self._session() as session:
            return [_runbook_from_row(r) for r in session.scalars(stmt)]

    # ── Executions ───────────────────────────────────────────────────────

    def create_execution(self, execution: Execution) -> Execution:
        self._add(_execution_to_row(execution, ExecutionTable()))
        return execution

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._session() as session:
            row = session.get(ExecutionTable, execution_id)
            return _execution_from_row(row) if row else None

    def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        if "status" in fields:
            raise StoreError("Use transition_execution to change execution status")
        with self._session() as session:
            row = session.get(ExecutionTable, execution_id)
            if row is None:
                raise RecordNotFoundError("Execution", execution_id)
            execution = _execution_from_row(row)
            _apply(execution, fields)
            _execution_to_row(execution, row)
            return execution

    def transition_execution(
        self,
        execution_id: str,
        expected: Collection[ExecutionStatus],
        new_status: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        with self._session() as session:
            swapped = session.execute(
                update(ExecutionTable)
                .where(ExecutionTable.id == execution_id)
                .where(ExecutionTable.status.in_([s.value for s in expected]))
                .values(status=new_status.value)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not swapped:
                if session.get(ExecutionTable, execution_id) is None:
                    raise RecordNotFoundError("Execution", execution_id)
                return False
            if fields:
                row = session.get(ExecutionTable, execution_id, populate_existing=True)
                execution = _execution_from_row(row)
                _apply(execution, fields)
                _execution_to_row(execution, row)
            return True

    def list_executions(
        self,
        *,
        runbook_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        stmt = select(ExecutionTable).order_by(ExecutionTable.created_at)
        if runbook_id is not None:
            stmt = stmt.where(ExecutionTable.runbook_id == runbook_id)
        if status is not None:
            stmt = stmt.where(ExecutionTable.status == status.value)
        with self._session() as session:
            return [_execution_from_row(r) for r in session.scalars(stmt)]

    # ── Step results ─────────────────────────────────────────────────────

    def add_step_result(self, result: StepExecutionResult) -> StepExecutionResult:
        self._add(_result_to_row(result, StepResultTable()))
        return result

    def update_step_results(
        self,
        execution_id: str,
        step_index: int,
        from_status: StepStatus,
        **fields: Any,
    ) -> int:
        stmt = (
            select(StepResultTable)
            .where(StepResultTable.execution_id == execution_id)
            .where(StepResultTable.step_index == step_index)
            .where(StepResultTable.status == from_status.value)
        )
        with self._session() as session:
            rows = list(session.scalars(stmt))
            for row in rows:
                result = _result_from_row(row)
                _apply(result, fields)
                _result_to_row(result, row)
            return len(rows)

    def list_step_results(self, execution_id: str) -> list[StepExecutionResult]:
        stmt = (
            select(StepResultTable)
            .where(StepResultTable.execution_id == execution_id)
            .order_by(StepResultTable.step_index, StepResultTable.attempt_number)
        )
        with self._session() as session:
            return [_result_from_row(r) for r in session.scalars(stmt)]

    # ── Approvals ────────────────────────────────────────────────────────

    def create_approval(self, approval: Approval) -> Approval:
        with self._session() as session:
            pending = session.scalars(
                select(ApprovalTable.id)
                .where(ApprovalTable.execution_id == approval.execution_id)
                .where(ApprovalTable.step_index == approval.step_index)
                .where(ApprovalTable.status == ApprovalStatus.PENDING.value)
            ).first()
            if pending is not None:
                raise StoreError(
                    f"Approval already pending for execution {approval.execution_id} "
                    f"step {approval.step_index}"
                )
            session.add(_approval_to_row(approval, ApprovalTable()))
        return approval

    def get_approval(self, approval_id: str) -> Approval | None:
        with self._session() as session:
            row = session.get(ApprovalTable, approval_id)
            return _approval_from_row(row) if row else None

    def update_approval(self, approval_id: str, **fields: Any) -> Approval:
        with self._session() as session:
            row = session.get(ApprovalTable, approval_id)
            if row is None:
                raise RecordNotFoundError("Approval", approval_id)
            approval = _approval_from_row(row)
            _apply(approval, fields)
            _approval_to_row(approval, row)
            return approval

    def transition_approval(
        self,
        approval_id: str,
        expected: Collection[ApprovalStatus],
        new_status: ApprovalStatus,
        **fields: Any,
    ) -> bool:
        with self._session() as session:
            swapped = session.execute(
                update(ApprovalTable)
                .where(ApprovalTable.id == approval_id)
                .where(ApprovalTable.status.in_([s.value for s in expected]))
                .values(status=new_status.value)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not swapped:
                if session.get(ApprovalTable, approval_id) is None:
                    raise RecordNotFoundError("Approval", approval_id)
                return False
            if fields:
                row = session.get(ApprovalTable, approval_id, populate_existing=True)
                approval = _approval_from_row(row)
                _apply(approval, fields)
                _approval_to_row(approval, row)
            return True

    def list_approvals(
        self,
        *,
        execution_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[Approval]:
        stmt = select(ApprovalTable).order_by(ApprovalTable.requested_at)
        if execution_id is not None:
            stmt = stmt.where(ApprovalTable.execution_id == execution_id)
        if status is not None:
            stmt = stmt.where(ApprovalTable.status == status.value)
        with self._session() as session:
            return [_approval_from_row(r) for r in session.scalars(stmt)]

    # ── Logs ─────────────────────────────────────────────────────────────

    def add_log(self, entry: LogEntry) -> LogEntry:
        row = LogTable(
            id=entry.id,
            execution_id=entry.execution_id,
            step_index=entry.step_index,
            level=entry.level.value,
            message=entry.message,
            metadata_=entry.metadata,
            timestamp=entry.timestamp,
        )
        with self._session() as session:
            session.add(row)
            session.flush()
            entry.sequence = row.sequence
        return entry

    def list_logs(self, execution_id: str) -> list[LogEntry]:
        stmt = (
            select(LogTable)
            .where(LogTable.execution_id == execution_id)
            .order_by(LogTable.timestamp, LogTable.sequence)
        )
        with self._session() as session:
            return [_log_from_row(r) for r in session.scalars(stmt)]

    # ── Secrets ──────────────────────────────────────────────────────────

    def add_secret(self, secret: Secret) -> Secret:
        self._add(
            SecretTable(
                id=secret.id,
                name=secret.name,
                value=secret.value,
                environment=secret.environment.value,
                runbook_id=secret.runbook_id,
                created_at=secret.created_at,
            )
        )
        return secret

    def list_secrets(self, environment: Environment, runbook_id: str | None = None) -> list[Secret]:
        stmt = select(SecretTable).where(SecretTable.environment == environment.value)
        if runbook_id is None:
            stmt = stmt.where(SecretTable.runbook_id.is_(None))
        else:
            stmt = stmt.where(
                (SecretTable.runbook_id.is_(None)) | (SecretTable.runbook_id == runbook_id)
            )
        with self._session() as session:
            return [_secret_from_row(r) for r in session.scalars(stmt)]
