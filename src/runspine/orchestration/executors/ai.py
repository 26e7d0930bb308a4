"""AI step executor.

Posts the step's prompt, plus whatever execution context the step asks
for, to the analysis backend configured by ``RUNSPINE_AI_ENDPOINT`` and
captures the JSON object it answers with.

Request body::

    {"action": "analyze", "prompt": "...", "model": "...",
     "temperature": 0.2, "max_tokens": 512,
     "context": {"step_results": [...], "logs": [...], "variables": {...}}}

No endpoint configured is a configuration error.  Transport errors,
non-2xx answers and bodies that are not a JSON object fail the step.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import httpx

from runspine.core.errors import ErrorCategory
from runspine.core.logging import get_logger
from runspine.core.settings import RunspineSettings
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import AiStep

logger = get_logger(__name__)

MAX_CONTEXT_LOGS = 200


def build_request(step: AiStep, context: ExecutionContext, default_model: str) -> dict[str, Any]:
    config = step.config
    payload: dict[str, Any] = {
        "action": config.action,
        "prompt": config.prompt,
        "model": config.model or default_model,
    }
    if config.temperature is not None:
        payload["temperature"] = config.temperature
    if config.max_tokens is not None:
        payload["max_tokens"] = config.max_tokens

    extra: dict[str, Any] = {}
    if config.context.include_step_results:
        extra["step_results"] = [r.to_dict() for r in context.step_results.values()]
    if config.context.include_logs:
        extra["logs"] = [entry.to_dict() for entry in context.logs()[-MAX_CONTEXT_LOGS:]]
    if config.context.include_variables:
        extra["variables"] = dict(context.variables)
    if extra:
        payload["context"] = extra
    return payload


class AiExecutor:
    def __init__(self, settings: RunspineSettings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    @asynccontextmanager
    async def _client_for_request(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
            yield client

    async def execute(self, step: AiStep, context: ExecutionContext) -> StepResult:
        endpoint = self._settings.ai_endpoint
        if not endpoint:
            return StepResult.fail(
                "AI backend is not configured (set RUNSPINE_AI_ENDPOINT)",
                code="AI_NOT_CONFIGURED",
                category=ErrorCategory.CONFIGURATION,
                fatal=True,
            )

        payload = build_request(step, context, self._settings.ai_model)
        headers: dict[str, str] = {}
        if self._settings.ai_api_key:
            headers["Authorization"] = f"Bearer {self._settings.ai_api_key}"

        try:
            async with self._client_for_request() as client:
                response = await client.post(endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            return StepResult.fail(
                f"AI request timed out: {e}", code="TIMEOUT", category=ErrorCategory.TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.warning("executor.ai.network_error", step=step.id, error=str(e))
            return StepResult.fail(
                f"AI request failed: {e}", code="NETWORK", category=ErrorCategory.NETWORK
            )

        if not response.is_success:
            return StepResult.fail(
                f"AI backend returned HTTP {response.status_code}",
                code=f"HTTP_{response.status_code}",
                category=ErrorCategory.HTTP,
                output={"status_code": response.status_code, "body": response.text},
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return StepResult.fail(
                "AI backend returned a malformed response (expected a JSON object)",
                code="AI_MALFORMED_RESPONSE",
                category=ErrorCategory.INTERNAL,
                output={"body": response.text},
            )

        result = StepResult.ok({"action": payload["action"], "model": payload["model"], "response": data})
        result.input = {"action": payload["action"], "prompt": payload["prompt"]}
        return result
