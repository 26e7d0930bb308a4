"""Engine settings.

Configuration is explicit, validated and environment-driven: every field
can be overridden with a ``RUNSPINE_``-prefixed environment variable or a
``.env`` file.

Examples:
    >>> from runspine.core.settings import RunspineSettings
    >>> settings = RunspineSettings(default_step_timeout_seconds=60)
    >>> settings.default_step_timeout_seconds
    60.0

Tags:
    settings, configuration, pydantic, environment, runspine
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunspineSettings(BaseSettings):
    """Settings shared by the engine, executors and CLI.

    Fields
    ──────
    log_level                        : Structlog log level
    json_logs                        : Force JSON (True) / console (False) logs
    default_step_timeout_seconds     : Step timeout when a step sets none
    default_runbook_timeout_seconds  : Active-run timeout when a runbook sets none
    http_timeout_seconds             : Transport timeout for HTTP steps
    ai_endpoint / ai_api_key / ai_model : Analysis backend for AI steps
    database_url                     : SQLAlchemy URL for the SQL store
    max_concurrent_executions        : Background execution limit
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Engine ───────────────────────────────────────────────────
    default_step_timeout_seconds: float = Field(default=300.0, gt=0)
    default_runbook_timeout_seconds: float = Field(default=3600.0, gt=0)
    max_concurrent_executions: int = Field(default=10, ge=1)

    # ── Executors ────────────────────────────────────────────────
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    ai_endpoint: str | None = None
    ai_api_key: str | None = None
    ai_model: str = "gpt-4o-mini"

    # ── Storage ──────────────────────────────────────────────────
    database_url: str = "sqlite:///runspine.db"


@lru_cache(maxsize=1)
def get_settings() -> RunspineSettings:
    """Return process-wide settings loaded from the environment."""
    return RunspineSettings()
