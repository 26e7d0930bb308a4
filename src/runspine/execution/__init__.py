"""Execution primitives: retry strategies and timeout races."""

from runspine.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    NoRetry,
    RetryContext,
    RetryStrategy,
    strategy_for,
)
from runspine.execution.timeout import (
    TimeoutExpired,
    run_with_timeout_async,
    with_deadline_async,
)

__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "LinearBackoff",
    "ConstantBackoff",
    "NoRetry",
    "RetryContext",
    "strategy_for",
    "TimeoutExpired",
    "run_with_timeout_async",
    "with_deadline_async",
]
