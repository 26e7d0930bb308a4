"""Tests for execution status transitions and record serialization."""

import pytest

from runspine.core.errors import InvalidTransitionError
from runspine.orchestration.models import (
    EXECUTION_TRANSITIONS,
    Execution,
    ExecutionStatus,
    RetryPolicy,
    Runbook,
    StepError,
    StepExecutionResult,
    StepStatus,
    VariableDeclaration,
    validate_execution_transition,
)


class TestExecutionTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (ExecutionStatus.QUEUED, ExecutionStatus.RUNNING),
            (ExecutionStatus.QUEUED, ExecutionStatus.CANCELLED),
            (ExecutionStatus.RUNNING, ExecutionStatus.SUCCESS),
            (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
            (ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current, target):
        validate_execution_transition(current, target)

    @pytest.mark.parametrize(
        "current, target",
        [
            (ExecutionStatus.QUEUED, ExecutionStatus.SUCCESS),
            (ExecutionStatus.SUCCESS, ExecutionStatus.RUNNING),
            (ExecutionStatus.FAILED, ExecutionStatus.RUNNING),
            (ExecutionStatus.CANCELLED, ExecutionStatus.QUEUED),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            validate_execution_transition(current, target)

    def test_terminal_statuses_have_no_exits(self):
        for status in ExecutionStatus:
            assert status.is_terminal == (not EXECUTION_TRANSITIONS[status])


class TestRecords:
    def test_runbook_variables(self):
        runbook = Runbook(name="r", variables=[VariableDeclaration("a", "1"), VariableDeclaration("b", "2")])
        assert runbook.default_variables == {"a": "1", "b": "2"}

    def test_runbook_to_dict(self):
        data = Runbook(name="r", retry_policy=RetryPolicy(max_attempts=2)).to_dict()
        assert data["name"] == "r"
        assert data["retry_policy"]["max_attempts"] == 2
        assert data["rollback_trigger_on"] == ["failure"]

    def test_execution_to_dict(self):
        data = Execution(runbook_id="rb", triggered_by="alice").to_dict()
        assert data["status"] == "QUEUED"
        assert data["trigger_type"] == "manual"
        assert data["started_at"] is None

    def test_step_row_flags(self):
        row = StepExecutionResult(
            execution_id="e",
            step_index=0,
            step_id="s",
            step_name="S",
            step_kind="HTTP",
            status=StepStatus.FAILED,
            error=StepError("boom", code="HTTP_500"),
        )
        assert row.failed and not row.succeeded and not row.paused
        assert row.to_dict()["error"] == {"message": "boom", "code": "HTTP_500", "category": None}
