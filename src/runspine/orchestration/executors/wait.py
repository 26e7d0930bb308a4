"""WAIT step executor."""

from __future__ import annotations

import asyncio

from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import WaitStep


class WaitExecutor:
    """Sleeps for ``config.duration`` seconds; always succeeds."""

    async def execute(self, step: WaitStep, context: ExecutionContext) -> StepResult:
        await asyncio.sleep(step.config.duration)
        output: dict[str, object] = {"waited_seconds": step.config.duration}
        if step.config.reason:
            output["reason"] = step.config.reason
        return StepResult.ok(output)
