"""
Orchestration -- runbooks, steps and their execution.

Data (imported eagerly):
    models          Runbook, Execution, StepExecutionResult, Approval, LogEntry
    step_types      Step tree (HTTP, SQL, MANUAL, CONDITIONAL, AI, WAIT, PARALLEL ...)
    runbook_spec    Pydantic document models, YAML loading, ``parse_steps``
    step_result     StepResult envelope returned by executors

Runtime (imported on first access):
    ExecutionEngine, ExecutionContext, ApprovalCoordinator,
    RunbookCatalog, RunbookService, ExecutorRegistry
"""

from runspine.orchestration.models import (
    Approval,
    ApprovalStatus,
    Environment,
    Execution,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    Runbook,
    RunbookStatus,
    StepExecutionResult,
    StepStatus,
    TriggerType,
)
from runspine.orchestration.runbook_spec import RunbookSpec, parse_steps
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import Step, StepKind, count_steps, iter_steps

# The runtime pulls in the store, which itself imports ``models``.
_LAZY_IMPORTS = {
    "ExecutionEngine": "runspine.orchestration.engine",
    "ExecutionContext": "runspine.orchestration.context",
    "ApprovalCoordinator": "runspine.orchestration.approvals",
    "RunbookCatalog": "runspine.orchestration.runbooks",
    "RunbookService": "runspine.orchestration.service",
    "ExecutionHistory": "runspine.orchestration.service",
    "ExecutorRegistry": "runspine.orchestration.executors",
}


def __getattr__(name: str):
    if name in _LAZY_IMPORTS:
        import importlib

        module = importlib.import_module(_LAZY_IMPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Approval",
    "ApprovalStatus",
    "Environment",
    "Execution",
    "ExecutionStatus",
    "LogEntry",
    "LogLevel",
    "Runbook",
    "RunbookStatus",
    "StepExecutionResult",
    "StepStatus",
    "TriggerType",
    "RunbookSpec",
    "parse_steps",
    "StepResult",
    "Step",
    "StepKind",
    "count_steps",
    "iter_steps",
    *_LAZY_IMPORTS,
]
