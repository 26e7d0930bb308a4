"""
CLI utility helpers — output formatting and wiring of the runtime.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from runspine.core.events.memory import InMemoryEventBus
from runspine.core.orm import create_runspine_engine
from runspine.core.settings import RunspineSettings
from runspine.core.store import RunbookStore
from runspine.core.store.memory import InMemoryStore
from runspine.core.store.sql import SqlStore
from runspine.orchestration.approvals import ApprovalCoordinator
from runspine.orchestration.engine import ExecutionEngine
from runspine.orchestration.models import ExecutionStatus, StepExecutionResult
from runspine.orchestration.runbooks import RunbookCatalog
from runspine.orchestration.service import ExecutionHistory, RunbookService

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    "SUCCESS": "green",
    "FAILED": "red",
    "CANCELLED": "yellow",
    "SKIPPED": "dim",
    "PAUSED": "magenta",
    "RUNNING": "cyan",
}


# ── Runtime wiring ───────────────────────────────────────────────────────


@dataclass
class Runtime:
    """Everything one CLI invocation needs, built around a single store."""

    store: RunbookStore
    engine: ExecutionEngine
    catalog: RunbookCatalog
    service: RunbookService
    approvals: ApprovalCoordinator


def make_runtime(settings: RunspineSettings, database: str | None = None) -> Runtime:
    """Build store, bus, engine and services.

    Without ``database`` the store lives in memory and disappears with
    the process, which is enough for ``run`` but not for approving a
    paused execution later.
    """
    store: RunbookStore
    if database:
        sql_store = SqlStore(create_runspine_engine(database))
        sql_store.create_all()
        store = sql_store
    else:
        store = InMemoryStore()
    bus = InMemoryEventBus()
    engine = ExecutionEngine(store, bus, settings)
    return Runtime(
        store=store,
        engine=engine,
        catalog=RunbookCatalog(store),
        service=RunbookService(store, bus, engine),
        approvals=ApprovalCoordinator(store, bus, engine),
    )


def parse_params(values: list[str] | None) -> dict[str, str]:
    """Turn repeated ``key=value`` options into a dict."""
    params: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            err_console.print(f"[bold red]Error[/bold red]: invalid parameter '{item}' (expected key=value)")
            raise typer.Exit(code=2)
        params[key.strip()] = value
    return params


def fail(message: str, code: str | None = None, exit_code: int = 1) -> NoReturn:
    label = f" ({code})" if code else ""
    err_console.print(f"[bold red]Error[/bold red]{label}: {message}")
    raise typer.Exit(code=exit_code)


def exit_code_for(status: ExecutionStatus) -> int:
    if status == ExecutionStatus.SUCCESS:
        return 0
    if status == ExecutionStatus.RUNNING:
        # Paused on an approval.
        return 3
    return 1


# ── Output helpers ───────────────────────────────────────────────────────


def output_history(history: ExecutionHistory, *, as_json: bool = False) -> None:
    """Render an execution with its step rows and pending approvals."""
    if as_json:
        console.print_json(json.dumps(history.to_dict(), default=str))
        return

    execution = history.execution
    _print_dict(
        {
            "execution": execution.id,
            "status": _styled(execution.status.value),
            "progress": f"{execution.current_step_index}/{execution.total_steps}",
            "duration_ms": execution.duration_ms,
            "error": execution.error_message,
        },
        title="Execution",
    )
    if history.step_results:
        _print_rows(history.step_results)
    pending = [a for a in history.approvals if a.status.value == "PENDING"]
    for approval in pending:
        console.print(
            f"\n[magenta]Waiting for approval[/magenta] {approval.id} "
            f"(step '{approval.step_name}', approvers: {', '.join(approval.required_approvers) or 'any'})"
        )
        if approval.request_note:
            console.print(f"  [dim]{approval.request_note}[/dim]")


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _print_rows(rows: list[StepExecutionResult]) -> None:
    table = Table(title="Steps", show_lines=False, pad_edge=False)
    for col in ("#", "step", "kind", "status", "attempt", "ms", "error"):
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(
            str(row.step_index),
            row.step_name,
            row.step_kind,
            _styled(row.status.value),
            str(row.attempt_number),
            "" if row.duration_ms is None else str(row.duration_ms),
            row.error.message if row.error else "",
        )
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        if v is None:
            continue
        console.print(f"  [cyan]{k}[/cyan]: {v}")
