"""SQLAlchemy 2.0 ORM layer backing :class:`runspine.core.store.sql.SqlStore`.

Modules
-------
base        RunspineBase (declarative base)
session     Engine factory, RunspineSession
tables      Mapped tables (RunbookTable, ExecutionTable, ...)

Tags:
    runspine, orm, sqlalchemy, declarative
"""

from __future__ import annotations

from runspine.core.orm.base import RunspineBase
from runspine.core.orm.session import (
    RunspineSession,
    create_runspine_engine,
    runspine_session_factory,
)
from runspine.core.orm.tables import (
    ApprovalTable,
    ExecutionTable,
    LogTable,
    RunbookTable,
    SecretTable,
    StepResultTable,
)

__all__ = [
    "RunspineBase",
    "create_runspine_engine",
    "RunspineSession",
    "runspine_session_factory",
    "RunbookTable",
    "ExecutionTable",
    "StepResultTable",
    "ApprovalTable",
    "LogTable",
    "SecretTable",
]
