"""Runbook table definitions — runbooks, executions, step results,
approvals, logs, secrets.

Tags:
    runspine, orm, sqlalchemy, tables

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from runspine.core.orm.base import RunspineBase


class RunbookTable(RunspineBase):
    __tablename__ = "runbooks"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    environment: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="ACTIVE", nullable=False)
    steps: Mapped[list] = mapped_column(JSON, nullable=False)
    parameters: Mapped[list] = mapped_column(JSON, nullable=False)
    variables: Mapped[list] = mapped_column(JSON, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=3600, nullable=False)
    retry_policy: Mapped[dict | None] = mapped_column(JSON)
    rollback_steps: Mapped[list] = mapped_column(JSON, nullable=False)
    rollback_trigger_on: Mapped[list] = mapped_column(JSON, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, nullable=False)
    owner_id: Mapped[str | None]
    version: Mapped[int] = mapped_column(default=1, nullable=False)
    is_latest: Mapped[bool] = mapped_column(default=True, nullable=False)
    parent_id: Mapped[str | None] = mapped_column(Text, ForeignKey("runbooks.id"))
    created_at: Mapped[datetime.datetime]
    updated_at: Mapped[datetime.datetime]


class ExecutionTable(RunspineBase):
    __tablename__ = "runbook_executions"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    runbook_id: Mapped[str] = mapped_column(Text, ForeignKey("runbooks.id"), nullable=False)
    runbook_version: Mapped[int] = mapped_column(default=1, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="QUEUED", nullable=False)
    triggered_by: Mapped[str]
    trigger_type: Mapped[str] = mapped_column(Text, default="manual", nullable=False)
    environment: Mapped[str]
    input_params: Mapped[dict] = mapped_column(JSON, nullable=False)
    current_step_index: Mapped[int] = mapped_column(default=0, nullable=False)
    total_steps: Mapped[int] = mapped_column(default=0, nullable=False)
    started_at: Mapped[datetime.datetime | None]
    finished_at: Mapped[datetime.datetime | None]
    duration_ms: Mapped[int | None]
    error_message: Mapped[str | None]
    error_step: Mapped[int | None]
    context_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime.datetime]

    __table_args__ = (Index("ix_runbook_executions_runbook_id", "runbook_id"),)


class StepResultTable(RunspineBase):
    __tablename__ = "runbook_step_results"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    execution_id: Mapped[str] = mapped_column(
        Text, ForeignKey("runbook_executions.id"), nullable=False
    )
    step_index: Mapped[int]
    step_id: Mapped[str]
    step_name: Mapped[str]
    step_kind: Mapped[str]
    status: Mapped[str]
    started_at: Mapped[datetime.datetime | None]
    finished_at: Mapped[datetime.datetime | None]
    duration_ms: Mapped[int | None]
    input: Mapped[dict | None] = mapped_column(JSON)
    output: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[dict | None] = mapped_column(JSON)
    attempt_number: Mapped[int] = mapped_column(default=1, nullable=False)

    __table_args__ = (
        Index("ix_runbook_step_results_execution", "execution_id", "step_index", "attempt_number"),
    )


class ApprovalTable(RunspineBase):
    __tablename__ = "runbook_approvals"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    execution_id: Mapped[str] = mapped_column(
        Text, ForeignKey("runbook_executions.id"), nullable=False
    )
    step_index: Mapped[int]
    step_id: Mapped[str]
    step_name: Mapped[str]
    required_approvers: Mapped[list] = mapped_column(JSON, nullable=False)
    require_all: Mapped[bool] = mapped_column(default=False, nullable=False)
    approved_by: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="PENDING", nullable=False)
    requested_at: Mapped[datetime.datetime]
    responded_at: Mapped[datetime.datetime | None]
    expires_at: Mapped[datetime.datetime | None]
    request_note: Mapped[str | None]
    response_note: Mapped[str | None]
    responder: Mapped[str | None]

    __table_args__ = (Index("ix_runbook_approvals_execution", "execution_id", "step_index"),)


class LogTable(RunspineBase):
    __tablename__ = "runbook_execution_logs"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    execution_id: Mapped[str] = mapped_column(
        Text, ForeignKey("runbook_executions.id"), nullable=False
    )
    step_index: Mapped[int | None]
    level: Mapped[str]
    message: Mapped[str]
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    timestamp: Mapped[datetime.datetime]

    __table_args__ = (Index("ix_runbook_execution_logs_execution", "execution_id", "timestamp"),)


class SecretTable(RunspineBase):
    __tablename__ = "runbook_secrets"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str]
    value: Mapped[str]
    environment: Mapped[str]
    runbook_id: Mapped[str | None] = mapped_column(Text, ForeignKey("runbooks.id"))
    created_at: Mapped[datetime.datetime]


__all__ = [
    "RunbookTable",
    "ExecutionTable",
    "StepResultTable",
    "ApprovalTable",
    "LogTable",
    "SecretTable",
]
