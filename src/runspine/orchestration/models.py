"""Runbook domain models.

Defines the records the engine reads and writes through the store:

- Runbook: a versioned workflow definition
- Execution: one run of a runbook, with its own state machine
- StepExecutionResult: append-only record of one step attempt
- Approval: human sign-off request for a paused MANUAL step
- LogEntry: append-only audit line of an execution
- Secret: credential scoped to a runbook (or shared) and an environment

State transitions for ``Execution.status`` are enforced through
``EXECUTION_TRANSITIONS``; use :func:`validate_execution_transition`
before changing status.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from runspine.core.errors import InvalidTransitionError

if TYPE_CHECKING:
    from runspine.orchestration.step_types import Step


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class RunbookStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class Environment(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    STAGING = "STAGING"
    PRODUCTION = "PRODUCTION"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    DEPLOYMENT = "deployment"
    API = "api"


class ExecutionStatus(str, Enum):
    """Status of an execution.

    Valid transition graph::

        QUEUED  → RUNNING | CANCELLED
        RUNNING → SUCCESS | FAILED | CANCELLED
        SUCCESS, FAILED, CANCELLED → (terminal)

    A MANUAL step awaiting approval does not change the execution status:
    the execution stays RUNNING while the step result row is PAUSED.
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.QUEUED: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.SUCCESS,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.SUCCESS: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def validate_execution_transition(
    current: ExecutionStatus,
    target: ExecutionStatus,
) -> None:
    """Raise :class:`InvalidTransitionError` if ``current → target`` is illegal."""
    if target not in EXECUTION_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value, "ExecutionStatus")


class StepStatus(str, Enum):
    """Status of one step attempt row."""

    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# =============================================================================
# Runbook-level policies
# =============================================================================


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryOn(str, Enum):
    """Failure classes a retry policy may be restricted to."""

    TIMEOUT = "timeout"
    ERROR = "error"
    HTTP_5XX = "http_5xx"
    HTTP_4XX = "http_4xx"


@dataclass(frozen=True)
class RetryPolicy:
    """Runbook-wide retry configuration.

    ``max_attempts`` counts the first attempt; a step's own ``retry_count``
    overrides it. ``retry_on`` empty means every non-configuration failure
    is retried.
    """

    max_attempts: int = 1
    backoff_strategy: BackoffStrategy = BackoffStrategy.FIXED
    initial_delay_ms: int = 1000
    max_delay_ms: int | None = None
    retry_on: tuple[RetryOn, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_strategy": self.backoff_strategy.value,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "retry_on": [r.value for r in self.retry_on],
        }


class RollbackTrigger(str, Enum):
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class RollbackConfig:
    """Steps to run best-effort before a failed execution is finalised."""

    enabled: bool = False
    steps: tuple[Step, ...] = ()
    trigger_on: tuple[RollbackTrigger, ...] = (RollbackTrigger.FAILURE,)


@dataclass(frozen=True)
class ParameterDeclaration:
    """An input parameter a runbook accepts."""

    name: str
    type: str = "string"  # string | number | boolean | select | multiselect
    description: str = ""
    required: bool = False
    default: Any = None
    options: tuple[str, ...] = ()
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    min_length: int | None = None
    max_length: int | None = None


@dataclass(frozen=True)
class VariableDeclaration:
    name: str
    value: str
    description: str = ""


# =============================================================================
# Records
# =============================================================================


@dataclass
class Runbook:
    """A versioned runbook definition.

    ``steps`` holds the raw step document as stored; it is parsed into the
    step tree with :func:`runspine.orchestration.runbook_spec.parse_steps`.
    """

    name: str
    steps: list[dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    description: str = ""
    environment: Environment = Environment.DEVELOPMENT
    status: RunbookStatus = RunbookStatus.ACTIVE
    parameters: list[ParameterDeclaration] = field(default_factory=list)
    variables: list[VariableDeclaration] = field(default_factory=list)
    timeout_seconds: int = 3600
    retry_policy: RetryPolicy | None = None
    rollback_steps: list[dict[str, Any]] = field(default_factory=list)
    rollback_trigger_on: list[str] = field(default_factory=lambda: ["failure"])
    tags: list[str] = field(default_factory=list)
    owner_id: str | None = None
    version: int = 1
    is_latest: bool = True
    parent_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def default_variables(self) -> dict[str, str]:
        return {v.name: v.value for v in self.variables}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "environment": self.environment.value,
            "status": self.status.value,
            "steps": self.steps,
            "parameters": [p.__dict__ for p in self.parameters],
            "variables": [v.__dict__ for v in self.variables],
            "timeout_seconds": self.timeout_seconds,
            "retry_policy": self.retry_policy.to_dict() if self.retry_policy else None,
            "rollback_steps": self.rollback_steps,
            "rollback_trigger_on": self.rollback_trigger_on,
            "tags": self.tags,
            "owner_id": self.owner_id,
            "version": self.version,
            "is_latest": self.is_latest,
            "parent_id": self.parent_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Execution:
    """One run attempt of a runbook."""

    runbook_id: str
    triggered_by: str
    environment: Environment = Environment.DEVELOPMENT
    id: str = field(default_factory=new_id)
    runbook_version: int = 1
    status: ExecutionStatus = ExecutionStatus.QUEUED
    trigger_type: TriggerType = TriggerType.MANUAL
    input_params: dict[str, Any] = field(default_factory=dict)
    current_step_index: int = 0
    total_steps: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    error_step: int | None = None
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runbook_id": self.runbook_id,
            "runbook_version": self.runbook_version,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "trigger_type": self.trigger_type.value,
            "environment": self.environment.value,
            "input_params": self.input_params,
            "current_step_index": self.current_step_index,
            "total_steps": self.total_steps,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "error_step": self.error_step,
            "created_at": _iso(self.created_at),
        }


@dataclass
class StepError:
    message: str
    code: str | None = None
    category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code, "category": self.category}


@dataclass
class StepExecutionResult:
    """Append-only record of one attempt of one step."""

    execution_id: str
    step_index: int
    step_id: str
    step_name: str
    step_kind: str
    status: StepStatus
    id: str = field(default_factory=new_id)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: StepError | None = None
    attempt_number: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def paused(self) -> bool:
        return self.status == StepStatus.PAUSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_index": self.step_index,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "step_kind": self.step_kind,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
            "input": self.input,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "attempt_number": self.attempt_number,
        }


@dataclass
class Approval:
    """Human sign-off request for a paused MANUAL step."""

    execution_id: str
    step_index: int
    step_id: str
    step_name: str
    required_approvers: list[str]
    id: str = field(default_factory=new_id)
    require_all: bool = False
    approved_by: list[str] = field(default_factory=list)
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    responded_at: datetime | None = None
    expires_at: datetime | None = None
    request_note: str | None = None
    response_note: str | None = None
    responder: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_index": self.step_index,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "required_approvers": list(self.required_approvers),
            "require_all": self.require_all,
            "approved_by": list(self.approved_by),
            "status": self.status.value,
            "requested_at": _iso(self.requested_at),
            "responded_at": _iso(self.responded_at),
            "expires_at": _iso(self.expires_at),
            "request_note": self.request_note,
            "response_note": self.response_note,
            "responder": self.responder,
        }


@dataclass
class LogEntry:
    """Write-once audit line; ordered by (timestamp, sequence)."""

    execution_id: str
    level: LogLevel
    message: str
    step_index: int | None = None
    metadata: dict[str, Any] | None = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_index": self.step_index,
            "level": self.level.value,
            "message": self.message,
            "metadata": self.metadata,
            "timestamp": _iso(self.timestamp),
            "sequence": self.sequence,
        }


@dataclass
class Secret:
    """A credential available to executions in one environment.

    ``runbook_id=None`` marks a shared secret visible to every runbook.
    """

    name: str
    value: str
    environment: Environment
    runbook_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


__all__ = [
    "utcnow",
    "new_id",
    "RunbookStatus",
    "Environment",
    "TriggerType",
    "ExecutionStatus",
    "TERMINAL_STATUSES",
    "EXECUTION_TRANSITIONS",
    "validate_execution_transition",
    "StepStatus",
    "ApprovalStatus",
    "LogLevel",
    "BackoffStrategy",
    "RetryOn",
    "RetryPolicy",
    "RollbackTrigger",
    "RollbackConfig",
    "ParameterDeclaration",
    "VariableDeclaration",
    "Runbook",
    "Execution",
    "StepError",
    "StepExecutionResult",
    "Approval",
    "LogEntry",
    "Secret",
]
