"""Tests for retry strategies and policy-to-strategy mapping."""

import pytest

from runspine.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    NoRetry,
    RetryContext,
    strategy_for,
)
from runspine.orchestration.models import BackoffStrategy, RetryOn, RetryPolicy


class TestStrategies:
    """Delay curves and retry budgets."""

    def test_exponential_delays(self):
        strategy = ExponentialBackoff(max_retries=4, base_delay=0.5, max_delay=3.0)
        assert [strategy.next_delay(a) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_exponential_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=1.0, jitter=True, jitter_range=0.25)
        for _ in range(20):
            assert 0.75 <= strategy.next_delay(0) <= 1.25

    def test_linear_delays(self):
        strategy = LinearBackoff(base_delay=1.0, increment=0.5, max_delay=2.0)
        assert [strategy.next_delay(a) for a in range(4)] == [1.0, 1.5, 2.0, 2.0]

    def test_constant(self):
        assert ConstantBackoff(delay=0.2).next_delay(7) == 0.2

    def test_budget(self):
        strategy = ConstantBackoff(max_retries=2)
        assert strategy.should_retry(1)
        assert strategy.should_retry(2)
        assert not strategy.should_retry(3)

    def test_retry_on_restricts_failure_classes(self):
        strategy = ConstantBackoff(max_retries=3, retry_on={RetryOn.TIMEOUT})
        assert strategy.should_retry(1, RetryOn.TIMEOUT)
        assert not strategy.should_retry(1, RetryOn.HTTP_5XX)

    def test_no_retry(self):
        assert not NoRetry().should_retry(0)


class TestStrategyFor:
    """Building a strategy from a runbook policy and step overrides."""

    def test_no_policy_means_no_retry(self):
        assert isinstance(strategy_for(None), NoRetry)

    def test_policy_attempts_include_first(self):
        strategy = strategy_for(RetryPolicy(max_attempts=3, initial_delay_ms=100))
        assert isinstance(strategy, ConstantBackoff)
        assert strategy.max_retries == 2
        assert strategy.delay == pytest.approx(0.1)

    def test_step_retry_count_overrides_policy(self):
        strategy = strategy_for(RetryPolicy(max_attempts=5), retry_count=1, retry_delay_ms=0)
        assert strategy.max_retries == 1
        assert strategy.next_delay(0) == 0

    def test_step_retry_count_zero_disables(self):
        assert isinstance(strategy_for(RetryPolicy(max_attempts=5), retry_count=0), NoRetry)

    @pytest.mark.parametrize(
        "backoff, expected",
        [
            (BackoffStrategy.EXPONENTIAL, ExponentialBackoff),
            (BackoffStrategy.LINEAR, LinearBackoff),
            (BackoffStrategy.FIXED, ConstantBackoff),
        ],
    )
    def test_backoff_kind(self, backoff, expected):
        policy = RetryPolicy(max_attempts=2, backoff_strategy=backoff)
        assert isinstance(strategy_for(policy), expected)

    def test_max_delay_caps_exponential(self):
        policy = RetryPolicy(
            max_attempts=6,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
            initial_delay_ms=1000,
            max_delay_ms=2500,
        )
        assert strategy_for(policy).next_delay(4) == 2.5

    def test_retry_on_carried_over(self):
        policy = RetryPolicy(max_attempts=3, retry_on=(RetryOn.HTTP_5XX,))
        strategy = strategy_for(policy)
        assert strategy.should_retry(1, RetryOn.HTTP_5XX)
        assert not strategy.should_retry(1, RetryOn.HTTP_4XX)


class TestRetryContext:
    def test_tracks_attempts(self):
        ctx = RetryContext(ConstantBackoff(max_retries=1, delay=0.0))
        ctx.record_failure(RetryOn.ERROR)
        assert ctx.should_retry()
        assert ctx.next_delay() == 0.0
        ctx.record_failure(RetryOn.ERROR)
        assert not ctx.should_retry()
        assert ctx.attempts == 2
        assert [f[0] for f in ctx.failures] == [1, 2]
