"""
Test support utilities for runspine tests.

Step document builders (the same shape runbook authors write) and an
``httpx.MockTransport`` handler with per-path canned responses.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx

BASE_URL = "https://ops.test"


# =============================================================================
# Step document builders
# =============================================================================


def step(step_id: str, kind: str, config: dict[str, Any], **common: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {"id": step_id, "name": common.pop("name", step_id), "type": kind, "config": config}
    doc.update(common)
    return doc


def http_step(step_id: str, path: str = "/ok", method: str = "GET", **common: Any) -> dict[str, Any]:
    config: dict[str, Any] = {"url": f"{BASE_URL}{path}", "method": method}
    for key in ("headers", "body", "auth", "expected_status_codes", "validate_response"):
        if key in common:
            config[key] = common.pop(key)
    return step(step_id, "HTTP", config, **common)


def wait_step(step_id: str, duration: float = 0, **common: Any) -> dict[str, Any]:
    return step(step_id, "WAIT", {"duration": duration}, **common)


def manual_step(step_id: str, approvers: tuple[str, ...] = ("alice",), **common: Any) -> dict[str, Any]:
    config: dict[str, Any] = {"approvers": list(approvers)}
    for key in ("instructions", "require_all_approvers", "expires_after"):
        if key in common:
            config[key] = common.pop(key)
    return step(step_id, "MANUAL", config, **common)


def conditional_step(
    step_id: str,
    condition: dict[str, Any],
    on_true: list[dict[str, Any]] | None = None,
    on_false: list[dict[str, Any]] | None = None,
    **common: Any,
) -> dict[str, Any]:
    config = {"condition": condition, "on_true": on_true or [], "on_false": on_false or []}
    return step(step_id, "CONDITIONAL", config, **common)


def parallel_step(
    step_id: str,
    children: list[dict[str, Any]],
    wait_for_all: bool = True,
    fail_on_any_error: bool = False,
    **common: Any,
) -> dict[str, Any]:
    config = {"steps": children, "wait_for_all": wait_for_all, "fail_on_any_error": fail_on_any_error}
    return step(step_id, "PARALLEL", config, **common)


def sql_step(step_id: str, query: str, connection_string: str, **common: Any) -> dict[str, Any]:
    config: dict[str, Any] = {"query": query, "connection_string": connection_string}
    for key in ("parameters", "expected_row_count", "validate_result"):
        if key in common:
            config[key] = common.pop(key)
    return step(step_id, "SQL", config, **common)


# =============================================================================
# HTTP stub
# =============================================================================


Responder = int | dict | httpx.Response | Exception | Callable[[httpx.Request], Any]


class HttpStub:
    """Canned responses keyed by URL path.

    ``add(path, 500, 500, 200)`` answers the first two requests with 500
    and every later one with 200.  Unknown paths answer 200 ``{"ok": true}``.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Responder]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, *responses: Responder) -> None:
        self.routes[path] = list(responses)

    def delay(self, path: str, seconds: float, then: Responder = 200) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(seconds)
            return _to_response(then, request)

        self.add(path, slow)

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def __call__(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(200, json={"ok": True})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, Exception):
            raise responder
        if callable(responder) and not isinstance(responder, httpx.Response):
            return responder(request)
        return _to_response(responder, request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def _to_response(responder: Responder, request: httpx.Request) -> httpx.Response:
    if isinstance(responder, httpx.Response):
        return responder
    if isinstance(responder, int):
        return httpx.Response(responder, json={"status": responder})
    if isinstance(responder, dict):
        return httpx.Response(200, json=responder)
    raise TypeError(f"Unsupported responder: {responder!r}")
