"""HTTP step executor.

Sends one request with ``httpx`` and checks the response:

- status not in ``expected_status_codes`` → failure ``HTTP_<code>``
- transport error → failure ``NETWORK`` (transport timeout → ``TIMEOUT``)
- ``validate_response`` path mismatch → failure ``ASSERTION_FAILED``

The body is parsed as JSON when possible, otherwise kept as text.  The
output always carries ``status_code``, ``headers`` and ``body`` so later
steps can template on ``steps.<id>.output.body``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import httpx

from runspine.core.errors import ErrorCategory
from runspine.core.logging import get_logger
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import HttpConfig, HttpStep

logger = get_logger(__name__)

_MISSING = object()


def lookup_path(data: Any, path: str) -> Any:
    """Follow a dotted path (``data.items.0.name``; leading ``$.`` allowed).

    Returns ``_MISSING`` when a segment does not exist.
    """
    if path.startswith("$."):
        path = path[2:]
    current = data
    for part in (p for p in path.split(".") if p):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return _MISSING
        else:
            return _MISSING
    return current


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _request_kwargs(config: HttpConfig) -> dict[str, Any]:
    headers = dict(config.headers)
    kwargs: dict[str, Any] = {}
    auth = config.auth
    if auth is not None:
        if auth.type == "bearer":
            headers["Authorization"] = f"Bearer {auth.token}"
        elif auth.type == "basic":
            kwargs["auth"] = httpx.BasicAuth(auth.username or "", auth.password or "")
        elif auth.type == "apikey":
            headers[auth.api_key_header] = auth.api_key or ""
    if config.body is not None:
        if isinstance(config.body, (dict, list)):
            kwargs["json"] = config.body
        else:
            kwargs["content"] = str(config.body)
    kwargs["headers"] = headers
    return kwargs


class HttpExecutor:
    """Executes HTTP steps.

    Args:
        client: Shared ``httpx.AsyncClient`` (not closed by the executor).
            When omitted a client is created per request.
        timeout: Transport timeout for per-request clients.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client
        self._timeout = timeout

    @asynccontextmanager
    async def _client_for_request(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def execute(self, step: HttpStep, context: ExecutionContext) -> StepResult:
        config = step.config
        request_input = {"method": config.method, "url": config.url}

        try:
            async with self._client_for_request() as client:
                response = await client.request(config.method, config.url, **_request_kwargs(config))
        except httpx.TimeoutException as e:
            result = StepResult.fail(
                f"HTTP request timed out: {e}", code="TIMEOUT", category=ErrorCategory.TIMEOUT
            )
            result.input = request_input
            return result
        except httpx.HTTPError as e:
            logger.warning("executor.http.network_error", step=step.id, url=config.url, error=str(e))
            result = StepResult.fail(
                f"HTTP request failed: {e}", code="NETWORK", category=ErrorCategory.NETWORK
            )
            result.input = request_input
            return result

        body = _parse_body(response)
        output = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": body,
        }

        if response.status_code not in config.expected_status_codes:
            result = StepResult.fail(
                f"HTTP {response.status_code}: expected one of {list(config.expected_status_codes)}",
                code=f"HTTP_{response.status_code}",
                category=ErrorCategory.HTTP,
                output=output,
            )
        elif config.validate_response is not None:
            assertion = config.validate_response
            actual = lookup_path(body, assertion.json_path)
            if actual is _MISSING:
                result = StepResult.fail(
                    f"Response validation failed: path '{assertion.json_path}' not found",
                    code="ASSERTION_FAILED",
                    category=ErrorCategory.ASSERTION,
                    output=output,
                )
            elif actual != assertion.expected_value:
                result = StepResult.fail(
                    f"Response validation failed: {assertion.json_path} = {actual!r}, "
                    f"expected {assertion.expected_value!r}",
                    code="ASSERTION_FAILED",
                    category=ErrorCategory.ASSERTION,
                    output=output,
                )
            else:
                result = StepResult.ok(output)
        else:
            result = StepResult.ok(output)

        result.input = request_input
        return result
