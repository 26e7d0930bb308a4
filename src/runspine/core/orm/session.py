"""SQLAlchemy engine factory and session class.

This module provides:

* ``create_runspine_engine``   -- Create a SA engine from a URL.
* ``RunspineSession``          -- A pre-configured ``Session`` subclass.
* ``runspine_session_factory`` -- ``sessionmaker`` producing ``RunspineSession``.

Tags:
    runspine, orm, sqlalchemy, session, engine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def create_runspine_engine(
    url: str = "sqlite:///runspine.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``, etc.)
    echo:
        If ``True``, log all SQL to stdout.
    pool_size, max_overflow, pool_timeout:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        # An in-memory database only lives as long as its one connection.
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)

        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    pool_kwargs: dict[str, Any] = {}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    if pool_timeout is not None:
        pool_kwargs["pool_timeout"] = pool_timeout

    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class RunspineSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Prevents lazy-load surprises after commit.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def runspine_session_factory(engine: Engine) -> sessionmaker[RunspineSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``RunspineSession`` instances."""
    return sessionmaker(bind=engine, class_=RunspineSession)
