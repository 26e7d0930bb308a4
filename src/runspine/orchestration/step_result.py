"""Step Result — uniform envelope returned by every step executor.

Manifesto:
    Executors never touch the store for their own outcome.  They return a
``StepResult`` and the engine turns it into the persisted
``StepExecutionResult`` row, adding the flat step index, the attempt
number and timing.  Keeping the envelope uniform lets the engine decide
success/failure/pause, pick a retry class, and record errors as data.

ARCHITECTURE
────────────
::

    StepResult
      ├── .ok(output, context_updates)      → SUCCESS
      ├── .fail(error, code, category)      → FAILED
      ├── .from_error(exc)                  → FAILED from a RunspineError
      ├── .pause(output)                    → PAUSED (MANUAL steps)
      └── .skip(reason)                     → SKIPPED

    .retry_class  ── timeout | http_5xx | http_4xx | error | None
                     (matched against RetryPolicy.retry_on)

Example::

    from runspine.orchestration.step_result import StepResult

    async def execute(self, step, context):
        if response.status_code not in step.config.expected_status_codes:
            return StepResult.fail(
                f"Unexpected status {response.status_code}",
                code=f"HTTP_{response.status_code}",
                category=ErrorCategory.HTTP,
            )
        return StepResult.ok(output={"status": response.status_code})

Tags:
    runspine, orchestration, step-result, envelope

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from runspine.core.errors import ErrorCategory, RunspineError
from runspine.orchestration.models import RetryOn, StepError, StepStatus


@dataclass
class StepResult:
    """
    Outcome of one executor invocation.

    Attributes:
        status: SUCCESS, FAILED, PAUSED or SKIPPED
        output: Data stored on the result row and exposed to later steps
        input: Rendered step input recorded on the row (optional)
        context_updates: Variables to set on the execution context
        error: Error message if status is FAILED
        error_code: Machine-readable code (``HTTP_500``, ``TIMEOUT`` ...)
        error_category: Category used for retry decisions
        fatal: Configuration failure; aborts the run regardless of
            ``continue_on_error`` and is never retried
    """

    status: StepStatus
    output: dict[str, Any] = field(default_factory=dict)
    input: dict[str, Any] | None = None
    context_updates: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None
    error_category: str | None = None
    fatal: bool = False

    def __post_init__(self) -> None:
        if self.status == StepStatus.FAILED and not self.error:
            self.error = "Step failed without error message"
        if isinstance(self.error_category, ErrorCategory):
            self.error_category = self.error_category.value

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def ok(
        cls,
        output: dict[str, Any] | None = None,
        context_updates: dict[str, Any] | None = None,
    ) -> StepResult:
        return cls(
            status=StepStatus.SUCCESS,
            output=output or {},
            context_updates=context_updates or {},
        )

    @classmethod
    def fail(
        cls,
        error: str,
        code: str | None = None,
        category: ErrorCategory | str = ErrorCategory.INTERNAL,
        output: dict[str, Any] | None = None,
        fatal: bool = False,
    ) -> StepResult:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            code: Machine-readable error code
            category: Error category for retry decisions
            output: Optional partial output (e.g. the response body)
            fatal: Abort the run even if the step continues on error
        """
        return cls(
            status=StepStatus.FAILED,
            output=output or {},
            error=error,
            error_code=code,
            error_category=category,
            fatal=fatal,
        )

    @classmethod
    def from_error(cls, error: Exception) -> StepResult:
        """Capture an exception as a failed result."""
        if isinstance(error, RunspineError):
            return cls.fail(
                error.message,
                code=error.code,
                category=error.category,
                fatal=error.category in (ErrorCategory.CONFIGURATION, ErrorCategory.VALIDATION),
            )
        return cls.fail(str(error) or type(error).__name__, code="INTERNAL")

    @classmethod
    def pause(cls, output: dict[str, Any] | None = None) -> StepResult:
        """Step is waiting on an external decision (approval)."""
        return cls(status=StepStatus.PAUSED, output=output or {})

    @classmethod
    def skip(cls, reason: str) -> StepResult:
        return cls(status=StepStatus.SKIPPED, output={"skipped": True, "reason": reason})

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def success(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def paused(self) -> bool:
        return self.status == StepStatus.PAUSED

    @property
    def step_error(self) -> StepError | None:
        if not self.failed:
            return None
        return StepError(message=self.error or "", code=self.error_code, category=self.error_category)

    @property
    def retry_class(self) -> RetryOn | None:
        """Failure class matched against ``RetryPolicy.retry_on``."""
        if not self.failed:
            return None
        if self.error_category == ErrorCategory.TIMEOUT.value:
            return RetryOn.TIMEOUT
        code = self.error_code or ""
        if code.startswith("HTTP_5"):
            return RetryOn.HTTP_5XX
        if code.startswith("HTTP_4"):
            return RetryOn.HTTP_4XX
        return RetryOn.ERROR

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value, "output": self.output}
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["error_code"] = self.error_code
        if self.error_category:
            result["error_category"] = self.error_category
        if self.context_updates:
            result["context_updates"] = self.context_updates
        return result

    def __repr__(self) -> str:
        label = self.status.value if not self.failed else f"FAILED({self.error_code})"
        return f"StepResult({label}, output_keys={list(self.output.keys())})"


__all__ = ["StepResult"]
