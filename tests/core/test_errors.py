"""Tests for the runspine error hierarchy.

Covers default categories/retryability per family, codes, context
chaining, serialization and the classification helpers.
"""

import pytest

from runspine.core.errors import (
    ApprovalAlreadyProcessedError,
    ApprovalError,
    ApprovalExpiredError,
    ConditionError,
    ConfigurationError,
    ErrorCategory,
    ExecutionNotFoundError,
    ExecutorNotFoundError,
    NetworkError,
    OrchestrationError,
    ParameterValidationError,
    RunspineError,
    StepTimeoutError,
    TemplateError,
    TransientError,
    categorize_error,
    is_retryable,
)


# ---------------------------------------------------------------------------
# Base error
# ---------------------------------------------------------------------------


class TestRunspineError:
    def test_defaults(self):
        error = RunspineError("boom")
        assert error.message == "boom"
        assert str(error) == "boom"
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert error.code == "INTERNAL"

    def test_explicit_fields_override_defaults(self):
        error = RunspineError("x", category=ErrorCategory.NETWORK, retryable=True, code="CUSTOM")
        assert error.category == ErrorCategory.NETWORK
        assert error.retryable is True
        assert error.code == "CUSTOM"

    def test_cause_is_chained(self):
        cause = ValueError("root")
        error = RunspineError("wrapped", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause

    def test_with_context(self):
        error = ConfigurationError("bad step").with_context(step_id="s1", owner="ops")
        assert error.context.step_id == "s1"
        assert error.context.metadata["owner"] == "ops"

    def test_to_dict(self):
        data = ConfigurationError("bad", cause=KeyError("k")).to_dict()
        assert data["error_type"] == "ConfigurationError"
        assert data["message"] == "bad"
        assert data["category"] == "CONFIGURATION"
        assert data["retryable"] is False
        assert "cause" in data


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------


class TestErrorFamilies:
    @pytest.mark.parametrize(
        "error",
        [
            ExecutorNotFoundError("SHELL"),
            ConditionError("x"),
            TemplateError("x"),
        ],
    )
    def test_configuration_errors_are_not_retryable(self, error):
        assert isinstance(error, ConfigurationError)
        assert error.category == ErrorCategory.CONFIGURATION
        assert not error.retryable

    def test_transient_errors_are_retryable(self):
        assert NetworkError("down").retryable
        assert isinstance(NetworkError("down"), TransientError)

    def test_step_timeout(self):
        error = StepTimeoutError(1.0, "slow")
        assert isinstance(error, TransientError)
        assert error.category == ErrorCategory.TIMEOUT
        assert error.code == "TIMEOUT"
        assert "1" in error.message

    def test_orchestration_errors(self):
        error = ExecutionNotFoundError("exec-9")
        assert isinstance(error, OrchestrationError)
        assert "exec-9" in error.message

    def test_approval_codes(self):
        assert ApprovalAlreadyProcessedError("APPROVED").code == "ALREADY_PROCESSED"
        assert ApprovalExpiredError("a1").code == "EXPIRED"
        assert isinstance(ApprovalExpiredError("a1"), ApprovalError)

    def test_parameter_errors_listed(self):
        error = ParameterValidationError("Invalid", errors=["a: required", "b: expected a number"])
        assert isinstance(error, ConfigurationError)
        assert error.category == ErrorCategory.VALIDATION
        assert error.errors == ["a: required", "b: expected a number"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestClassification:
    def test_is_retryable(self):
        assert is_retryable(NetworkError("x"))
        assert not is_retryable(ConfigurationError("x"))
        assert is_retryable(ConnectionError("socket"))
        assert not is_retryable(ValueError("nope"))

    def test_categorize(self):
        assert categorize_error(ConfigurationError("x")) == ErrorCategory.CONFIGURATION
        assert categorize_error(TimeoutError()) == ErrorCategory.TIMEOUT
        assert categorize_error(RuntimeError("x")) == ErrorCategory.UNKNOWN
