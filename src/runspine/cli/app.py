"""
Root Typer application for the runspine CLI.

Commands:
    validate   Check a runbook file without running it
    run        Run a runbook file to completion (or its first approval)
    approve    Approve a pending MANUAL step and resume the execution
    reject     Reject a pending MANUAL step
    history    Show an execution with its step results
"""

from __future__ import annotations

import asyncio
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from pathlib import Path

import typer
from typer import Typer

from runspine import __version__
from runspine.cli.utils import (
    console,
    exit_code_for,
    fail,
    make_runtime,
    output_history,
    parse_params,
)
from runspine.core.errors import RunspineError
from runspine.core.logging import configure_logging
from runspine.core.settings import RunspineSettings
from runspine.orchestration.models import Environment, TriggerType
from runspine.orchestration.runbook_spec import RunbookSpec, parse_steps
from runspine.orchestration.step_types import count_steps

app = Typer(
    name="runspine",
    help="runspine — run declarative operational runbooks.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("runspine")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"runspine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """runspine CLI — validate and run runbooks, answer approvals."""


def _settings(log_level: str | None, json_logs: bool | None) -> RunspineSettings:
    settings = RunspineSettings()
    level = log_level or settings.log_level
    configure_logging(level=level, json_format=json_logs if json_logs is not None else settings.json_logs)
    return settings


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("validate")
def validate_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Runbook YAML file."),
) -> None:
    """Validate a runbook file and print a summary."""
    try:
        spec = RunbookSpec.from_yaml_file(file)
    except RunspineError as e:
        fail(e.message, e.code)
    runbook = spec.to_runbook()
    steps, rollback = parse_steps(runbook.steps, runbook.rollback_steps)
    console.print(f"[green]✓[/green] {runbook.name}: valid")
    console.print(f"  [cyan]steps[/cyan]: {count_steps(steps)} ({len(steps)} top-level)")
    if rollback:
        console.print(f"  [cyan]rollback steps[/cyan]: {count_steps(rollback)}")
    if runbook.parameters:
        names = ", ".join(p.name + ("*" if p.required else "") for p in runbook.parameters)
        console.print(f"  [cyan]parameters[/cyan]: {names}")


@app.command("run")
def run_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Runbook YAML file."),
    param: list[str] = typer.Option(None, "--param", "-p", help="Input parameter as key=value (repeatable)."),
    env: Environment | None = typer.Option(
        None, "--env", "-e", case_sensitive=False, help="Target environment."
    ),
    database: str | None = typer.Option(
        None, "--database", "-d", help="SQLAlchemy URL to persist the run (default: in memory)."
    ),
    triggered_by: str = typer.Option("cli", "--triggered-by", help="Recorded as the trigger user."),
    as_json: bool = typer.Option(False, "--json", help="Print the history as JSON."),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default from settings)."),
    json_logs: bool | None = typer.Option(None, "--json-logs/--console-logs", help="Log format."),
) -> None:
    """Run a runbook until it completes, fails or waits for approval.

    Exit codes: 0 success, 1 failed or cancelled, 3 waiting for approval.
    """
    settings = _settings(log_level, json_logs)
    params = parse_params(param)

    async def _run() -> int:
        runtime = make_runtime(settings, database)
        try:
            runbook = runtime.catalog.create_from_yaml(file, owner_id=triggered_by)
            execution_id = await runtime.service.start_execution(
                runbook.id,
                params,
                environment=env,
                triggered_by=triggered_by,
                trigger_type=TriggerType.MANUAL,
                wait=True,
            )
        finally:
            await runtime.engine.close()
        history = runtime.service.history(execution_id)
        output_history(history, as_json=as_json)
        return exit_code_for(history.execution.status)

    try:
        code = asyncio.run(_run())
    except RunspineError as e:
        fail(e.message, e.code)
    raise typer.Exit(code=code)


@app.command("approve")
def approve_cmd(
    approval_id: str = typer.Argument(..., help="Approval id printed by 'run'."),
    approver: str = typer.Option(..., "--approver", "-a", help="Who is approving."),
    note: str | None = typer.Option(None, "--note", "-n", help="Optional note."),
    database: str = typer.Option(..., "--database", "-d", help="SQLAlchemy URL the run was persisted to."),
    as_json: bool = typer.Option(False, "--json", help="Print the history as JSON."),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default from settings)."),
) -> None:
    """Approve a pending MANUAL step and run the execution onward."""
    settings = _settings(log_level, None)

    async def _approve() -> int:
        runtime = make_runtime(settings, database)
        try:
            approval = await runtime.approvals.approve(approval_id, approver, note)
        finally:
            await runtime.engine.close()
        history = runtime.service.history(approval.execution_id)
        output_history(history, as_json=as_json)
        return exit_code_for(history.execution.status)

    try:
        code = asyncio.run(_approve())
    except RunspineError as e:
        fail(e.message, e.code)
    raise typer.Exit(code=code)


@app.command("reject")
def reject_cmd(
    approval_id: str = typer.Argument(..., help="Approval id printed by 'run'."),
    approver: str = typer.Option(..., "--approver", "-a", help="Who is rejecting."),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the step is rejected."),
    database: str = typer.Option(..., "--database", "-d", help="SQLAlchemy URL the run was persisted to."),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default from settings)."),
) -> None:
    """Reject a pending MANUAL step; the execution fails."""
    settings = _settings(log_level, None)

    async def _reject() -> None:
        runtime = make_runtime(settings, database)
        try:
            approval = await runtime.approvals.reject(approval_id, approver, reason)
        finally:
            await runtime.engine.close()
        output_history(runtime.service.history(approval.execution_id))

    try:
        asyncio.run(_reject())
    except RunspineError as e:
        fail(e.message, e.code)


@app.command("history")
def history_cmd(
    execution_id: str = typer.Argument(..., help="Execution id."),
    database: str = typer.Option(..., "--database", "-d", help="SQLAlchemy URL the run was persisted to."),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """Show an execution, its step results and pending approvals."""
    runtime = make_runtime(RunspineSettings(), database)
    try:
        history = runtime.service.history(execution_id)
    except RunspineError as e:
        fail(e.message, e.code)
    output_history(history, as_json=as_json)
