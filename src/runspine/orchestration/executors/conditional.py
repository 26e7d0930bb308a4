"""CONDITIONAL step executor.

Evaluates the condition, runs the chosen branch through the engine and
records every step of the other branch as SKIPPED, so each flattened
step ends up with a row.
"""

from __future__ import annotations

from runspine.core.errors import ConditionError, OrchestrationError, TemplateError
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.conditions import evaluate_condition
from runspine.orchestration.executors import StepRunner, is_fatal_failure
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import ConditionalStep


class ConditionalExecutor:
    def __init__(self, runner: StepRunner) -> None:
        self._runner = runner

    async def execute(self, step: ConditionalStep, context: ExecutionContext) -> StepResult:
        config = step.config
        try:
            outcome = evaluate_condition(config.condition, context)
        except (ConditionError, TemplateError) as e:
            await self._runner.skip_steps(step.children, context, "condition could not be evaluated")
            return StepResult.from_error(e)

        branch, taken, untaken = (
            ("on_true", config.on_true, config.on_false)
            if outcome
            else ("on_false", config.on_false, config.on_true)
        )
        await self._runner.skip_steps(untaken, context, f"branch {branch} taken")

        output = {"condition": outcome, "branch": branch}
        ok, failed = await self._runner.run_sequence(taken, context)
        if ok:
            return StepResult.ok(output)

        if failed is None:
            raise OrchestrationError(f"Branch {branch} of step '{step.id}' failed without a result row")
        error = failed.error
        return StepResult.fail(
            f"Step '{failed.step_id}' in branch {branch} failed: "
            f"{error.message if error else 'unknown error'}",
            code=error.code if error else None,
            category=error.category if error and error.category else "INTERNAL",
            output={**output, "failed_step": failed.step_id},
            fatal=is_fatal_failure(failed),
        )

