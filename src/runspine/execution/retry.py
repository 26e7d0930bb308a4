"""Retry strategies for step attempts.

The engine retries failed step attempts per the runbook's retry policy.
Strategies only answer two questions: "may I try again?" and "how long
do I wait first?".  Each retry produces a new ``StepExecutionResult`` row;
only the last attempt decides the step outcome.

Example:
    >>> from runspine.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=0.5, max_delay=4.0)
    >>> [strategy.next_delay(a) for a in range(4)]
    [0.5, 1.0, 2.0, 4.0]
"""

import random
from abc import ABC, abstractmethod
from collections.abc import Container
from dataclasses import dataclass, field
from datetime import datetime

from runspine.orchestration.models import BackoffStrategy, RetryOn, RetryPolicy, utcnow


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    max_retries: int

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    def should_retry(self, attempt: int, failure: RetryOn | None = None) -> bool:
        """Determine if another attempt is allowed.

        Args:
            attempt: Number of attempts made so far
            failure: Failure class of the last attempt
        """
        return attempt <= self.max_retries


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25
    retry_on: Container[RetryOn] | None = None

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, failure: RetryOn | None = None) -> bool:
        if attempt > self.max_retries:
            return False
        if failure is not None and self.retry_on is not None:
            return failure in self.retry_on
        return True


@dataclass
class LinearBackoff(RetryStrategy):
    """Linear backoff strategy.

    Delay = base_delay + (increment * attempt)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    increment: float = 1.0
    max_delay: float = 30.0
    retry_on: Container[RetryOn] | None = None

    def next_delay(self, attempt: int) -> float:
        return min(self.base_delay + (self.increment * attempt), self.max_delay)

    def should_retry(self, attempt: int, failure: RetryOn | None = None) -> bool:
        if attempt > self.max_retries:
            return False
        if failure is not None and self.retry_on is not None:
            return failure in self.retry_on
        return True


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    max_retries: int = 3
    delay: float = 1.0
    retry_on: Container[RetryOn] | None = None

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int, failure: RetryOn | None = None) -> bool:
        if attempt > self.max_retries:
            return False
        if failure is not None and self.retry_on is not None:
            return failure in self.retry_on
        return True


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    max_retries: int = 0

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, failure: RetryOn | None = None) -> bool:
        return False


def strategy_for(
    policy: RetryPolicy | None,
    retry_count: int | None = None,
    retry_delay_ms: int | None = None,
) -> RetryStrategy:
    """Build the strategy for one step.

    Attempts are ``retry_count + 1`` when the step sets ``retry_count``,
    otherwise ``policy.max_attempts``.  The delay base is the step's
    ``retry_delay_ms`` or the policy's ``initial_delay_ms``.
    """
    policy = policy or RetryPolicy()
    retries = retry_count if retry_count is not None else policy.max_attempts - 1
    if retries <= 0:
        return NoRetry()

    base = (retry_delay_ms if retry_delay_ms is not None else policy.initial_delay_ms) / 1000
    cap = policy.max_delay_ms / 1000 if policy.max_delay_ms is not None else float("inf")
    retry_on = frozenset(policy.retry_on) if policy.retry_on else None

    if policy.backoff_strategy == BackoffStrategy.EXPONENTIAL:
        return ExponentialBackoff(max_retries=retries, base_delay=base, max_delay=cap, retry_on=retry_on)
    if policy.backoff_strategy == BackoffStrategy.LINEAR:
        return LinearBackoff(
            max_retries=retries, base_delay=base, increment=base, max_delay=cap, retry_on=retry_on
        )
    return ConstantBackoff(max_retries=retries, delay=min(base, cap), retry_on=retry_on)


@dataclass
class RetryContext:
    """Tracks retry state for one step.

    Example:
        >>> ctx = RetryContext(ConstantBackoff(max_retries=2, delay=0.0))
        >>> ctx.record_failure(RetryOn.ERROR)
        >>> ctx.should_retry()
        True
    """

    strategy: RetryStrategy
    attempt: int = field(default=0, init=False)
    last_failure: RetryOn | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    failures: list[tuple[int, RetryOn, datetime]] = field(default_factory=list, init=False)

    def record_failure(self, failure: RetryOn) -> None:
        """Record a failed attempt."""
        self.attempt += 1
        self.failures.append((self.attempt, failure, utcnow()))
        self.last_failure = failure

    def should_retry(self) -> bool:
        return self.strategy.should_retry(self.attempt, self.last_failure)

    def next_delay(self) -> float:
        """Delay before the next attempt (after ``record_failure``)."""
        return self.strategy.next_delay(self.attempt - 1)

    @property
    def elapsed_seconds(self) -> float:
        return (utcnow() - self.started_at).total_seconds()

    @property
    def attempts(self) -> int:
        return self.attempt
