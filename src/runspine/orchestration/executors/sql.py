"""SQL step executor.

Runs one parameterised query through SQLAlchemy ``text()`` in a worker
thread so the event loop keeps serving other executions.

The database URL comes from ``connection_string`` or, preferably, from
the secret named by ``secret_name``.  Engines are cached per URL; the
cache holds at most ``MAX_ENGINES`` and disposes the least recently used
engine when it overflows.

Failures:

- driver / SQL error → ``QUERY_ERROR``
- ``expected_row_count`` or ``validate_result`` mismatch → ``ASSERTION_FAILED``
- unknown secret → configuration error (``MISSING_SECRET``)
"""

from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from runspine.core.errors import ConfigurationError, ErrorCategory, MissingSecretError
from runspine.core.logging import get_logger
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import SqlConfig, SqlStep

logger = get_logger(__name__)

MAX_ROWS = 1000
MAX_ENGINES = 8


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


class SqlExecutor:
    """Executes SQL steps."""

    def __init__(self, max_engines: int = MAX_ENGINES) -> None:
        self._engines: OrderedDict[str, Engine] = OrderedDict()
        self._max_engines = max(1, max_engines)
        self._lock = threading.Lock()

    def _engine_for(self, url: str) -> Engine:
        with self._lock:
            engine = self._engines.get(url)
            if engine is not None:
                self._engines.move_to_end(url)
                return engine
            engine = create_engine(url, pool_pre_ping=True)
            self._engines[url] = engine
            while len(self._engines) > self._max_engines:
                _, evicted = self._engines.popitem(last=False)
                evicted.dispose()
                logger.debug("executor.sql.engine_evicted", url=evicted.url.render_as_string())
            return engine

    @property
    def cached_urls(self) -> list[str]:
        with self._lock:
            return list(self._engines)

    def dispose(self) -> None:
        """Close every cached connection pool."""
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()

    @staticmethod
    def _connection_url(config: SqlConfig, context: ExecutionContext) -> str:
        if config.secret_name:
            url = context.secrets.get(config.secret_name)
            if url is None:
                raise MissingSecretError(config.secret_name)
            return url
        if not config.connection_string:
            raise ConfigurationError(
                "SQL step needs a connection_string or a secret_name", code="MISSING_CONNECTION"
            )
        return config.connection_string

    def _run_query(self, url: str, config: SqlConfig) -> dict[str, Any]:
        engine = self._engine_for(url)
        with engine.begin() as conn:
            result = conn.execute(text(config.query), dict(config.parameters))
            if result.returns_rows:
                rows = [
                    {key: _jsonable(value) for key, value in row._mapping.items()}
                    for row in result.fetchall()
                ]
                return {
                    "rows": rows[:MAX_ROWS],
                    "row_count": len(rows),
                    "truncated": len(rows) > MAX_ROWS,
                }
            return {"rows": [], "row_count": result.rowcount, "truncated": False}

    async def execute(self, step: SqlStep, context: ExecutionContext) -> StepResult:
        config = step.config
        url = self._connection_url(config, context)

        try:
            output = await asyncio.to_thread(self._run_query, url, config)
        except SQLAlchemyError as e:
            logger.warning("executor.sql.query_failed", step=step.id, error=str(e))
            return StepResult.fail(
                f"Query failed: {e}", code="QUERY_ERROR", category=ErrorCategory.QUERY
            )

        if config.expected_row_count is not None and output["row_count"] != config.expected_row_count:
            return StepResult.fail(
                f"Expected {config.expected_row_count} rows, got {output['row_count']}",
                code="ASSERTION_FAILED",
                category=ErrorCategory.ASSERTION,
                output=output,
            )

        if config.validate_result is not None:
            column = config.validate_result.column
            rows = output["rows"]
            if not rows or column not in rows[0]:
                return StepResult.fail(
                    f"Result validation failed: column '{column}' not in result",
                    code="ASSERTION_FAILED",
                    category=ErrorCategory.ASSERTION,
                    output=output,
                )
            actual = rows[0][column]
            if actual != config.validate_result.expected_value:
                return StepResult.fail(
                    f"Result validation failed: {column} = {actual!r}, "
                    f"expected {config.validate_result.expected_value!r}",
                    code="ASSERTION_FAILED",
                    category=ErrorCategory.ASSERTION,
                    output=output,
                )

        result = StepResult.ok(output)
        result.input = {"query": config.query, "parameters": dict(config.parameters)}
        return result
