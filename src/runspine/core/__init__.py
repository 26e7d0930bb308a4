"""runspine.core -- foundations shared by every other layer.

Layout::

    errors.py      Structured error hierarchy (RunspineError, categories)
    logging.py     structlog configuration and context binding
    settings.py    pydantic-settings configuration (RUNSPINE_ env prefix)
    events/        Event bus protocol + in-memory implementation
    store/         Store protocol + in-memory and SQLAlchemy stores
    orm/           SQLAlchemy 2.0 tables behind the SQL store
    secrets.py     Secret backends and per-execution resolution

Only the dependency-light modules are re-exported here; ``store``,
``orm`` and ``secrets`` are imported from their own modules.
"""

from runspine.core.errors import (
    ConfigurationError,
    ErrorCategory,
    OrchestrationError,
    RunspineError,
    TransientError,
)
from runspine.core.logging import LogContext, configure_logging, get_logger
from runspine.core.settings import RunspineSettings, get_settings

__all__ = [
    "ErrorCategory",
    "RunspineError",
    "ConfigurationError",
    "TransientError",
    "OrchestrationError",
    "configure_logging",
    "get_logger",
    "LogContext",
    "RunspineSettings",
    "get_settings",
]
