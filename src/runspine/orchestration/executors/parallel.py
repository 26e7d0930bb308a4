"""PARALLEL step executor.

Children run concurrently as asyncio tasks, each through the engine's
``run_step`` so they get their own timeout, retries and rows.

Modes:

``wait_for_all=True`` (default)
    Every child runs to completion.  With ``fail_on_any_error`` the step
    fails if any child failed (children with ``continue_on_error`` are
    tolerated); otherwise child failures are only counted in the output.

``wait_for_all=False``
    The first child to succeed wins; the others are cancelled and
    recorded SKIPPED.  With ``fail_on_any_error`` the first failure ends
    the step instead.  If no child succeeds the step still succeeds with
    ``winner`` set to None.

A child configuration error always fails the step.
"""

from __future__ import annotations

import asyncio
from typing import Any

from runspine.core.logging import get_logger
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.executors import StepRunner, is_fatal_failure
from runspine.orchestration.models import StepExecutionResult
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import ParallelStep, Step

logger = get_logger(__name__)


def _tolerated(step: Step, result: StepExecutionResult) -> bool:
    return step.continue_on_error and not is_fatal_failure(result)


def _failure(message: str, results: dict[str, Any], failed: StepExecutionResult) -> StepResult:
    error = failed.error
    return StepResult.fail(
        message,
        code=error.code if error else None,
        category=error.category if error and error.category else "INTERNAL",
        output={"results": results, "failed_step": failed.step_id},
        fatal=is_fatal_failure(failed),
    )


class ParallelExecutor:
    def __init__(self, runner: StepRunner) -> None:
        self._runner = runner

    async def _cancel(self, tasks: set[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def execute(self, step: ParallelStep, context: ExecutionContext) -> StepResult:
        children = step.config.steps
        if not children:
            return StepResult.ok({"results": {}})

        tasks = {
            asyncio.create_task(self._runner.run_step(child, context), name=f"step:{child.id}"): child
            for child in children
        }
        if step.config.wait_for_all:
            return await self._wait_for_all(step, tasks)
        return await self._first_success(step, tasks, context)

    async def _wait_for_all(
        self, step: ParallelStep, tasks: dict[asyncio.Task, Step]
    ) -> StepResult:
        try:
            finished = await asyncio.gather(*tasks)
        except BaseException:
            await self._cancel({t for t in tasks if not t.done()})
            raise

        pairs = list(zip(tasks.values(), finished))
        results = {child.id: result.status.value for child, result in pairs}

        fatal = next((r for _, r in pairs if is_fatal_failure(r)), None)
        if fatal is not None:
            return _failure(f"Parallel step '{fatal.step_id}' is misconfigured", results, fatal)

        failed = [r for _, r in pairs if r.failed]
        if step.config.fail_on_any_error:
            blocking = [r for child, r in pairs if r.failed and not _tolerated(child, r)]
            if blocking:
                return _failure(
                    f"{len(blocking)} of {len(pairs)} parallel steps failed", results, blocking[0]
                )

        return StepResult.ok(
            {
                "results": results,
                "succeeded": sum(1 for _, r in pairs if r.succeeded),
                "failed": len(failed),
            }
        )

    async def _first_success(
        self,
        step: ParallelStep,
        tasks: dict[asyncio.Task, Step],
        context: ExecutionContext,
    ) -> StepResult:
        pending: set[asyncio.Task] = set(tasks)
        results: dict[str, Any] = {}
        failures: list[StepExecutionResult] = []
        winner: StepExecutionResult | None = None
        stop: StepExecutionResult | None = None

        try:
            while pending and winner is None and stop is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    child = tasks[task]
                    result = task.result()
                    results[child.id] = result.status.value
                    if result.succeeded and winner is None:
                        winner = result
                    elif result.failed:
                        failures.append(result)
                        if is_fatal_failure(result) or (
                            step.config.fail_on_any_error and not _tolerated(child, result)
                        ):
                            stop = stop or result
        finally:
            abandoned = [tasks[t] for t in pending]
            await self._cancel(pending)

        if abandoned:
            logger.debug(
                "executor.parallel.abandoned",
                step=step.id,
                abandoned=[c.id for c in abandoned],
            )
            await self._runner.skip_steps(abandoned, context, "abandoned after parallel step settled")
            for child in abandoned:
                results.setdefault(child.id, "SKIPPED")

        if stop is not None:
            return _failure(f"Parallel step '{stop.step_id}' failed", results, stop)
        return StepResult.ok(
            {
                "results": results,
                "winner": winner.step_id if winner is not None else None,
                "failed": len(failures),
            }
        )
