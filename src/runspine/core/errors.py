"""
Structured error types for the runbook engine.

Every error raised by runspine carries a category, an explicit retry flag,
optional structured context and an optional chained cause, so that the
engine can decide between "retry this step", "fail the run now" and
"report to the caller" without string matching.

Manifesto:
    - **Typed Error Hierarchy:** configuration, transient, orchestration,
      approval and storage errors are distinct classes
    - **Explicit Retry Semantics:** each error knows whether it is retryable
    - **Rich Context:** errors carry execution/step metadata for logging
    - **Error Chaining:** the original exception is preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        RunspineError                            │
        │        (category, retryable, code, context, cause)              │
        ├─────────────────────────────────────────────────────────────────┤
        │  ConfigurationError      TransientError     OrchestrationError  │
        │  (never retried)         (retryable)                            │
        │       │                       │                   │             │
        │  ExecutorNotFound        NetworkError       ExecutionNotFound   │
        │  ConditionError          StepTimeoutError   RunbookNotFound     │
        │  TemplateError                              ExecutionStateError │
        │  RunbookValidation                          ExecutionBusyError  │
        │  MissingSecret                                                  │
        │  ParameterValidation                        InvalidTransition   │
        │                                                                 │
        │  ApprovalError                               StoreError         │
        │       │                                           │             │
        │  ApprovalNotFound  ApprovalPermission        RecordNotFound     │
        │  ApprovalAlreadyProcessed  ApprovalExpired                      │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: raise a bare Exception from engine code
    ✅ DO: pick the RunspineError subclass matching the failure domain

    ❌ DON'T: mark configuration errors retryable
    ✅ DO: let ``default_retryable`` decide

Tags:
    error-handling, exception-hierarchy, retry-logic, runspine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and retry decisions."""

    CONFIGURATION = "CONFIGURATION"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    HTTP = "HTTP"
    QUERY = "QUERY"
    ASSERTION = "ASSERTION"
    APPROVAL = "APPROVAL"
    ORCHESTRATION = "ORCHESTRATION"
    STORAGE = "STORAGE"
    VALIDATION = "VALIDATION"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured context attached to an error.

    Attributes:
        execution_id: Execution the error belongs to
        runbook_id: Runbook being executed
        step_id: Step identifier within the runbook
        step_index: Flat step index within the execution
        metadata: Additional key-value pairs
    """

    execution_id: str | None = None
    runbook_id: str | None = None
    step_id: str | None = None
    step_index: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["execution_id", "runbook_id", "step_id", "step_index"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RunspineError(Exception):
    """
    Base exception for all runspine errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``default_code`` so call sites rarely need to pass them explicitly.

    Examples:
        >>> error = RunspineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> error = ConfigurationError("bad step").with_context(step_id="s1")
        >>> error.context.step_id
        's1'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    default_code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        code: str | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.code = code or self.default_code or self.category.value
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RunspineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ConfigurationError("No executor").with_context(step_id="s1")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS (never retried, abort the run)
# =============================================================================


class ConfigurationError(RunspineError):
    """Runbook or engine misconfiguration."""

    default_category = ErrorCategory.CONFIGURATION
    default_retryable = False


class ExecutorNotFoundError(ConfigurationError):
    """No executor is registered for a step kind."""

    default_code = "EXECUTOR_NOT_FOUND"

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No executor found for step type: {kind}")


class ConditionError(ConfigurationError):
    """A conditional expression could not be evaluated."""

    default_code = "CONDITION_ERROR"


class TemplateError(ConfigurationError):
    """A step config template references something undefined."""

    default_code = "TEMPLATE_ERROR"


class RunbookValidationError(ConfigurationError):
    """The runbook step document is invalid."""

    default_category = ErrorCategory.VALIDATION
    default_code = "INVALID_RUNBOOK"


class MissingSecretError(ConfigurationError):
    """A step references a secret no backend can provide."""

    default_code = "MISSING_SECRET"

    def __init__(self, key: str, tried_backends: list[str] | None = None):
        self.key = key
        self.tried_backends = tried_backends or []
        tried = f" (tried: {', '.join(self.tried_backends)})" if self.tried_backends else ""
        super().__init__(f"Secret not found: {key}{tried}")


class ParameterValidationError(ConfigurationError):
    """Execution input parameters don't satisfy the runbook declarations."""

    default_category = ErrorCategory.VALIDATION
    default_code = "INVALID_PARAMETERS"

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


# =============================================================================
# TRANSIENT ERRORS (retried per the step's retry policy)
# =============================================================================


class TransientError(RunspineError):
    """Temporary failure that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Network connectivity failure."""

    default_code = "NETWORK"


class StepTimeoutError(TransientError):
    """A step did not complete within its timeout."""

    default_category = ErrorCategory.TIMEOUT
    default_code = "TIMEOUT"

    def __init__(self, seconds: float, operation: str | None = None):
        self.seconds = seconds
        self.operation = operation
        label = f" ({operation})" if operation else ""
        super().__init__(f"Step execution timeout after {seconds:g}s{label}")


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(RunspineError):
    """Engine-level state error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class ExecutionNotFoundError(OrchestrationError):
    """Execution id does not exist."""

    default_code = "NOT_FOUND"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class RunbookNotFoundError(OrchestrationError):
    """Runbook id does not exist."""

    default_code = "NOT_FOUND"

    def __init__(self, runbook_id: str):
        self.runbook_id = runbook_id
        super().__init__(f"Runbook not found: {runbook_id}")


class ExecutionStateError(OrchestrationError):
    """The execution is not in a state that allows the requested action."""

    default_code = "INVALID_STATE"


class ExecutionBusyError(OrchestrationError):
    """Another owner is already advancing this execution."""

    default_code = "EXECUTION_BUSY"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} is already being advanced")


class InvalidTransitionError(OrchestrationError):
    """An illegal status transition was attempted."""

    default_code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# APPROVAL ERRORS
# =============================================================================


class ApprovalError(RunspineError):
    """Approval workflow error."""

    default_category = ErrorCategory.APPROVAL
    default_retryable = False


class ApprovalNotFoundError(ApprovalError):
    default_code = "NOT_FOUND"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval not found: {approval_id}")


class ApprovalPermissionError(ApprovalError):
    default_code = "FORBIDDEN"


class ApprovalAlreadyProcessedError(ApprovalError):
    default_code = "ALREADY_PROCESSED"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Approval already processed ({status.lower()})")


class ApprovalExpiredError(ApprovalError):
    default_code = "EXPIRED"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__("Approval has expired")


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StoreError(RunspineError):
    """Persistence failure."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class RecordNotFoundError(StoreError):
    default_code = "NOT_FOUND"

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RunspineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, OSError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, RunspineError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (KeyError, AttributeError)):
        return ErrorCategory.CONFIGURATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RunspineError",
    # Configuration
    "ConfigurationError",
    "ExecutorNotFoundError",
    "ConditionError",
    "TemplateError",
    "RunbookValidationError",
    "MissingSecretError",
    "ParameterValidationError",
    # Transient
    "TransientError",
    "NetworkError",
    "StepTimeoutError",
    # Orchestration
    "OrchestrationError",
    "ExecutionNotFoundError",
    "RunbookNotFoundError",
    "ExecutionStateError",
    "ExecutionBusyError",
    "InvalidTransitionError",
    # Approval
    "ApprovalError",
    "ApprovalNotFoundError",
    "ApprovalPermissionError",
    "ApprovalAlreadyProcessedError",
    "ApprovalExpiredError",
    # Storage
    "StoreError",
    "RecordNotFoundError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
