"""Contract tests run against both store implementations.

The in-memory store and the SQLAlchemy store (on in-memory SQLite) must
behave identically for everything the engine relies on: compare-and-set
transitions, row ordering, single pending approval per step, log
sequencing and secret scoping.
"""

from datetime import timedelta

import pytest

from runspine.core.errors import RecordNotFoundError, StoreError
from runspine.core.orm import create_runspine_engine
from runspine.core.store import RunbookStore
from runspine.core.store.memory import InMemoryStore
from runspine.core.store.sql import SqlStore
from runspine.orchestration.models import (
    Approval,
    ApprovalStatus,
    Environment,
    Execution,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    ParameterDeclaration,
    RetryPolicy,
    Runbook,
    Secret,
    StepError,
    StepExecutionResult,
    StepStatus,
    VariableDeclaration,
    utcnow,
)


@pytest.fixture(params=["memory", "sql"])
def any_store(request) -> RunbookStore:
    if request.param == "memory":
        return InMemoryStore()
    store = SqlStore(create_runspine_engine("sqlite://"))
    store.create_all()
    return store


def _row(execution_id: str, index: int, attempt: int = 1, status=StepStatus.SUCCESS) -> StepExecutionResult:
    return StepExecutionResult(
        execution_id=execution_id,
        step_index=index,
        step_id=f"s{index}",
        step_name=f"Step {index}",
        step_kind="WAIT",
        status=status,
        attempt_number=attempt,
    )


# ---------------------------------------------------------------------------
# Runbooks
# ---------------------------------------------------------------------------


class TestRunbooks:
    def test_round_trip_keeps_declarations(self, any_store):
        runbook = Runbook(
            name="deploy",
            steps=[{"id": "w", "name": "w", "type": "WAIT", "config": {"duration": 0}}],
            parameters=[ParameterDeclaration("region", type="select", options=("eu", "us"), required=True)],
            variables=[VariableDeclaration("api_version", "v2")],
            retry_policy=RetryPolicy(max_attempts=3),
            tags=["ops"],
        )
        any_store.create_runbook(runbook)

        loaded = any_store.get_runbook(runbook.id)
        assert loaded.name == "deploy"
        assert loaded.steps == runbook.steps
        assert loaded.parameters[0].name == "region"
        assert tuple(loaded.parameters[0].options) == ("eu", "us")
        assert loaded.default_variables == {"api_version": "v2"}
        assert loaded.retry_policy.max_attempts == 3
        assert loaded.tags == ["ops"]

    def test_get_unknown_returns_none(self, any_store):
        assert any_store.get_runbook("missing") is None

    def test_update(self, any_store):
        runbook = any_store.create_runbook(Runbook(name="a"))
        updated = any_store.update_runbook(runbook.id, description="new")
        assert updated.description == "new"

    def test_update_unknown_raises(self, any_store):
        with pytest.raises(RecordNotFoundError):
            any_store.update_runbook("missing", description="x")

    def test_list_latest_only(self, any_store):
        any_store.create_runbook(Runbook(name="a", is_latest=False))
        latest = any_store.create_runbook(Runbook(name="a", version=2))
        assert [r.id for r in any_store.list_runbooks(name="a", latest_only=True)] == [latest.id]
        assert len(any_store.list_runbooks(name="a")) == 2


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


class TestExecutions:
    def test_transition_is_compare_and_set(self, any_store):
        execution = any_store.create_execution(Execution(runbook_id="rb", triggered_by="alice"))

        assert any_store.transition_execution(
            execution.id, {ExecutionStatus.QUEUED}, ExecutionStatus.RUNNING, started_at=utcnow()
        )
        assert not any_store.transition_execution(
            execution.id, {ExecutionStatus.QUEUED}, ExecutionStatus.CANCELLED
        )
        loaded = any_store.get_execution(execution.id)
        assert loaded.status == ExecutionStatus.RUNNING
        assert loaded.started_at is not None

    def test_update_refuses_status(self, any_store):
        execution = any_store.create_execution(Execution(runbook_id="rb", triggered_by="alice"))
        with pytest.raises(StoreError):
            any_store.update_execution(execution.id, status=ExecutionStatus.SUCCESS)

    def test_snapshot_and_params_persist(self, any_store):
        execution = any_store.create_execution(
            Execution(runbook_id="rb", triggered_by="alice", input_params={"region": "eu"})
        )
        any_store.update_execution(execution.id, context_snapshot={"variables": {"x": 1}}, current_step_index=2)
        loaded = any_store.get_execution(execution.id)
        assert loaded.input_params == {"region": "eu"}
        assert loaded.context_snapshot == {"variables": {"x": 1}}
        assert loaded.current_step_index == 2

    def test_list_filters(self, any_store):
        a = any_store.create_execution(Execution(runbook_id="rb1", triggered_by="x"))
        any_store.create_execution(Execution(runbook_id="rb2", triggered_by="x"))
        any_store.transition_execution(a.id, {ExecutionStatus.QUEUED}, ExecutionStatus.RUNNING)

        assert [e.id for e in any_store.list_executions(runbook_id="rb1")] == [a.id]
        assert [e.id for e in any_store.list_executions(status=ExecutionStatus.RUNNING)] == [a.id]


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


class TestStepResults:
    def test_rows_ordered_by_index_then_attempt(self, any_store):
        for index, attempt in [(2, 1), (0, 2), (1, 1), (0, 1)]:
            any_store.add_step_result(_row("e1", index, attempt))
        rows = any_store.list_step_results("e1")
        assert [(r.step_index, r.attempt_number) for r in rows] == [(0, 1), (0, 2), (1, 1), (2, 1)]

    def test_error_and_output_round_trip(self, any_store):
        row = _row("e1", 0, status=StepStatus.FAILED)
        row.output = {"status_code": 500}
        row.error = StepError("HTTP 500", code="HTTP_500", category="HTTP")
        any_store.add_step_result(row)

        loaded = any_store.list_step_results("e1")[0]
        assert loaded.output == {"status_code": 500}
        assert loaded.error == StepError("HTTP 500", code="HTTP_500", category="HTTP")

    def test_update_only_rows_in_status(self, any_store):
        any_store.add_step_result(_row("e1", 0, status=StepStatus.PAUSED))
        any_store.add_step_result(_row("e1", 1, status=StepStatus.SUCCESS))

        count = any_store.update_step_results("e1", 0, StepStatus.PAUSED, status=StepStatus.SUCCESS)
        assert count == 1
        assert any_store.update_step_results("e1", 0, StepStatus.PAUSED, status=StepStatus.FAILED) == 0
        assert [r.status for r in any_store.list_step_results("e1")] == [StepStatus.SUCCESS] * 2


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class TestApprovals:
    def _approval(self, **overrides):
        fields = dict(
            execution_id="e1",
            step_index=0,
            step_id="gate",
            step_name="Gate",
            required_approvers=["alice", "bob"],
        )
        fields.update(overrides)
        return Approval(**fields)

    def test_single_pending_approval_per_step(self, any_store):
        any_store.create_approval(self._approval())
        with pytest.raises(StoreError):
            any_store.create_approval(self._approval())

    def test_new_request_allowed_after_previous_resolved(self, any_store):
        first = any_store.create_approval(self._approval())
        any_store.transition_approval(first.id, {ApprovalStatus.PENDING}, ApprovalStatus.REJECTED)
        any_store.create_approval(self._approval())
        assert len(any_store.list_approvals(execution_id="e1")) == 2

    def test_transition_compare_and_set(self, any_store):
        approval = any_store.create_approval(self._approval())
        assert any_store.transition_approval(
            approval.id,
            {ApprovalStatus.PENDING},
            ApprovalStatus.APPROVED,
            approved_by=["alice"],
            responder="alice",
        )
        assert not any_store.transition_approval(
            approval.id, {ApprovalStatus.PENDING}, ApprovalStatus.REJECTED
        )
        loaded = any_store.get_approval(approval.id)
        assert loaded.status == ApprovalStatus.APPROVED
        assert loaded.approved_by == ["alice"]
        assert loaded.responder == "alice"

    def test_expiry_timestamp_is_timezone_aware(self, any_store):
        expires = utcnow() + timedelta(minutes=5)
        approval = any_store.create_approval(self._approval(expires_at=expires))
        loaded = any_store.get_approval(approval.id)
        assert loaded.expires_at == expires
        assert not loaded.is_expired()

    def test_list_by_status(self, any_store):
        approval = any_store.create_approval(self._approval())
        assert [a.id for a in any_store.list_approvals(status=ApprovalStatus.PENDING)] == [approval.id]
        assert any_store.list_approvals(status=ApprovalStatus.APPROVED) == []


# ---------------------------------------------------------------------------
# Logs and secrets
# ---------------------------------------------------------------------------


class TestLogsAndSecrets:
    def test_logs_get_increasing_sequence(self, any_store):
        now = utcnow()
        first = any_store.add_log(LogEntry("e1", LogLevel.INFO, "one", timestamp=now))
        second = any_store.add_log(LogEntry("e1", LogLevel.WARN, "two", timestamp=now))
        assert second.sequence > first.sequence
        assert [e.message for e in any_store.list_logs("e1")] == ["one", "two"]

    def test_log_metadata_round_trip(self, any_store):
        any_store.add_log(LogEntry("e1", LogLevel.ERROR, "x", step_index=3, metadata={"code": "HTTP_500"}))
        entry = any_store.list_logs("e1")[0]
        assert entry.level == LogLevel.ERROR
        assert entry.step_index == 3
        assert entry.metadata == {"code": "HTTP_500"}

    def test_secret_scoping(self, any_store):
        any_store.add_secret(Secret("db_url", "shared", Environment.STAGING))
        any_store.add_secret(Secret("token", "mine", Environment.STAGING, runbook_id="rb1"))
        any_store.add_secret(Secret("token", "theirs", Environment.STAGING, runbook_id="rb2"))
        any_store.add_secret(Secret("db_url", "prod", Environment.PRODUCTION))

        visible = {(s.name, s.value) for s in any_store.list_secrets(Environment.STAGING, "rb1")}
        assert visible == {("db_url", "shared"), ("token", "mine")}
