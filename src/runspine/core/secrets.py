"""Secrets resolution for runbook executions.

Steps reference credentials by name (``{{ secrets.db_password }}`` in a
template, ``secretName`` on a SQL step).  Secrets are resolved **once**,
when the execution context is built, and scoped to the runbook and the
execution environment; a secret rotated mid-run is picked up by the next
execution.

Architecture:
    ::

        SecretsResolver(backends=[...])          tried in order
          ├── StoreSecretBackend(store, runbook_id, environment)
          │     runbook-specific secrets override shared ones
          └── EnvSecretBackend(prefix="RUNSPINE_SECRET_")
                                │
                                ▼
        resolver.snapshot()  →  {"db_password": "...", ...}
                                (ExecutionContext.secrets)

Examples:
    >>> from runspine.core.secrets import DictSecretBackend, SecretsResolver
    >>> resolver = SecretsResolver([DictSecretBackend({"token": "abc"})])
    >>> resolver.resolve("token")
    'abc'
    >>> resolver.resolve("missing", default=None) is None
    True

Tags:
    secrets, credentials, runspine
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Any

from runspine.core.errors import MissingSecretError
from runspine.core.store import RunbookStore
from runspine.orchestration.models import Environment

_SENTINEL = object()


# ---------------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------------


class SecretBackend(ABC):
    """Abstract base for secret backends."""

    @abstractmethod
    def get(self, name: str) -> str | None:
        """Retrieve a secret by name, or None if this backend lacks it."""
        ...

    def names(self) -> list[str]:
        """Names this backend can enumerate (empty if it cannot)."""
        return []

    def contains(self, name: str) -> bool:
        return self.get(name) is not None


class StoreSecretBackend(SecretBackend):
    """Secrets stored alongside runbooks, scoped to runbook and environment.

    Loads once at construction.  A runbook-specific secret overrides a
    shared secret (``runbook_id=None``) with the same name.
    """

    def __init__(self, store: RunbookStore, runbook_id: str, environment: Environment):
        shared: dict[str, str] = {}
        specific: dict[str, str] = {}
        for secret in store.list_secrets(environment, runbook_id):
            target = shared if secret.runbook_id is None else specific
            target[secret.name] = secret.value
        self._values = {**shared, **specific}

    def get(self, name: str) -> str | None:
        return self._values.get(name)

    def names(self) -> list[str]:
        return list(self._values)


class EnvSecretBackend(SecretBackend):
    """Resolve secrets from ``RUNSPINE_SECRET_<NAME>`` environment variables."""

    def __init__(self, prefix: str = "RUNSPINE_SECRET_"):
        self._prefix = prefix

    def get(self, name: str) -> str | None:
        return os.environ.get(f"{self._prefix}{name.upper()}")

    def names(self) -> list[str]:
        return [
            key[len(self._prefix):].lower()
            for key in os.environ
            if key.startswith(self._prefix)
        ]


class DictSecretBackend(SecretBackend):
    """In-memory secrets (tests, CLI ``--secret`` flags)."""

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)

    def names(self) -> list[str]:
        return list(self._secrets)

    def set(self, key: str, value: str) -> None:
        self._secrets[key] = value


# ---------------------------------------------------------------------------
# SecretsResolver
# ---------------------------------------------------------------------------


class SecretsResolver:
    """Multi-backend secrets resolver.

    Resolves secrets by trying backends in order until one succeeds.
    """

    def __init__(self, backends: list[SecretBackend] | None = None):
        self._backends: list[SecretBackend] = list(backends) if backends is not None else []

    def resolve(self, key: str, default: Any = _SENTINEL) -> str | None:
        """Resolve a secret by key.

        Raises:
            MissingSecretError: If no backend has the secret and no default given
        """
        tried: list[str] = []
        for backend in self._backends:
            tried.append(type(backend).__name__)
            value = backend.get(key)
            if value is not None:
                return value

        if default is not _SENTINEL:
            return default

        raise MissingSecretError(key, tried)

    def snapshot(self) -> dict[str, str]:
        """Every enumerable secret, earlier backends taking precedence."""
        values: dict[str, str] = {}
        for backend in reversed(self._backends):
            for name in backend.names():
                value = backend.get(name)
                if value is not None:
                    values[name] = value
        return values

    def add_backend(self, backend: SecretBackend, priority: int = -1) -> None:
        """Add a backend; ``priority=0`` makes it the first one tried."""
        if priority < 0:
            self._backends.append(backend)
        else:
            self._backends.insert(priority, backend)


def resolve_execution_secrets(
    store: RunbookStore,
    runbook_id: str,
    environment: Environment,
    extra_backends: list[SecretBackend] | None = None,
) -> dict[str, str]:
    """Resolve the secrets visible to one execution.

    Store secrets take precedence over ``extra_backends``.
    """
    resolver = SecretsResolver([StoreSecretBackend(store, runbook_id, environment)])
    for backend in extra_backends or []:
        resolver.add_backend(backend)
    return resolver.snapshot()


__all__ = [
    "SecretBackend",
    "StoreSecretBackend",
    "EnvSecretBackend",
    "DictSecretBackend",
    "SecretsResolver",
    "resolve_execution_secrets",
]
