"""
Shared pytest fixtures for runspine tests.

This module provides:
- Engine wiring (store, event bus, settings, engine, services)
- An HTTP stub served through ``httpx.MockTransport``
- An event recorder subscribed to every execution
- ``make_runbook`` / ``run_runbook`` helpers for scenario tests

Usage:
    async def test_something(make_runbook, run_runbook):
        runbook = make_runbook([wait_step("w")])
        execution = await run_runbook(runbook)
        assert execution.status == ExecutionStatus.SUCCESS
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from runspine.core.events import ALL, ExecutionEvent
from runspine.core.events.memory import InMemoryEventBus
from runspine.core.settings import RunspineSettings
from runspine.core.store.memory import InMemoryStore
from runspine.orchestration.approvals import ApprovalCoordinator
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.engine import ExecutionEngine
from runspine.orchestration.models import Execution, Runbook
from runspine.orchestration.runbooks import RunbookCatalog
from runspine.orchestration.service import RunbookService
from tests._support import HttpStub


# =============================================================================
# Wiring
# =============================================================================


@pytest.fixture
def settings() -> RunspineSettings:
    return RunspineSettings(
        _env_file=None,
        default_step_timeout_seconds=5,
        default_runbook_timeout_seconds=30,
        http_timeout_seconds=5,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def http() -> HttpStub:
    return HttpStub()


@pytest.fixture
async def http_client(http: HttpStub) -> AsyncIterator[Any]:
    client = http.client()
    yield client
    await client.aclose()


@pytest.fixture
def engine(store, bus, settings, http_client) -> ExecutionEngine:
    return ExecutionEngine(store, bus, settings, http_client=http_client)


@pytest.fixture
def catalog(store) -> RunbookCatalog:
    return RunbookCatalog(store)


@pytest.fixture
def service(store, bus, engine) -> RunbookService:
    return RunbookService(store, bus, engine)


@pytest.fixture
def coordinator(store, bus, engine) -> ApprovalCoordinator:
    return ApprovalCoordinator(store, bus, engine)


@pytest.fixture
def context(store, bus) -> ExecutionContext:
    """A bare context for calling executors directly."""
    return ExecutionContext(execution_id="exec-1", runbook_id="rb-1", store=store, event_bus=bus)


# =============================================================================
# Events
# =============================================================================


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[ExecutionEvent] = []

    async def __call__(self, event: ExecutionEvent) -> None:
        self.events.append(event)

    def types(self, execution_id: str | None = None, include_logs: bool = False) -> list[str]:
        return [
            e.event_type
            for e in self.events
            if (execution_id is None or e.execution_id == execution_id)
            and (include_logs or e.event_type != "log")
        ]

    def of_type(self, event_type: str) -> list[ExecutionEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
async def events(bus) -> EventRecorder:
    recorder = EventRecorder()
    await bus.subscribe(ALL, recorder)
    return recorder


# =============================================================================
# Scenario helpers
# =============================================================================


@pytest.fixture
def make_runbook(catalog):
    def _make(steps: list[dict[str, Any]], **fields: Any) -> Runbook:
        return catalog.create({"name": fields.pop("name", "test-runbook"), "steps": steps, **fields})

    return _make


@pytest.fixture
def run_runbook(service, store, engine):
    async def _run(runbook: Runbook, params: dict[str, Any] | None = None, **kwargs: Any) -> Execution:
        execution_id = await service.start_execution(runbook.id, params, wait=True, **kwargs)
        await engine.drain()
        return store.get_execution(execution_id)

    return _run
