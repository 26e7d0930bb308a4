"""Declarative base and type-map for the runspine ORM models.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
that maps Python built-in types to portable SA column types.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase


class RunspineBase(DeclarativeBase):
    """Shared declarative base for every runspine table.

    ``type_annotation_map`` lets Mapped columns use plain Python types and
    automatically resolve to the right SA column type:

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``bool``  → ``Boolean``
    * ``datetime.datetime`` → ``DateTime(timezone=True)``
    * ``dict``  → ``JSON``    (stored as TEXT in SQLite, native JSON elsewhere)
    * ``list``  → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime(timezone=True),
        dict: JSON,
        list: JSON,
    }
