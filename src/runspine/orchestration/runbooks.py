"""Runbook catalog: create, update and version runbooks.

Versions form a lineage.  ``update(..., new_version=True)`` forks the
current record into a new one with ``version + 1`` and ``parent_id``
pointing at the record it was forked from; exactly one record of a
lineage is ``is_latest``.  Executions keep pointing at the version they
were started from, so editing a runbook never changes a running one.

Every write goes through :class:`RunbookSpec`, so a runbook that cannot
be parsed is never stored.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from runspine.core.errors import RunbookNotFoundError, RunbookValidationError
from runspine.core.logging import get_logger
from runspine.core.store import RunbookStore
from runspine.orchestration.models import Runbook, RunbookStatus, utcnow
from runspine.orchestration.runbook_spec import RunbookSpec, format_validation_error

logger = get_logger(__name__)

_DOCUMENT_FIELDS = frozenset({
    "name",
    "description",
    "environment",
    "tags",
    "steps",
    "parameters",
    "variables",
    "timeout_seconds",
    "retry_policy",
    "rollback_steps",
    "rollback_trigger_on",
})

_RECORD_FIELDS = frozenset({"status", "owner_id"})


def _document(runbook: Runbook) -> dict[str, Any]:
    """The spec document a stored runbook was built from."""
    return {
        "name": runbook.name,
        "description": runbook.description,
        "environment": runbook.environment.value,
        "tags": list(runbook.tags),
        "steps": runbook.steps,
        "parameters": [
            {
                "name": p.name,
                "type": p.type,
                "description": p.description,
                "required": p.required,
                "default": p.default,
                "options": list(p.options),
                "validation": {
                    "pattern": p.pattern,
                    "min": p.min,
                    "max": p.max,
                    "min_length": p.min_length,
                    "max_length": p.max_length,
                },
            }
            for p in runbook.parameters
        ],
        "variables": [
            {"name": v.name, "value": v.value, "description": v.description}
            for v in runbook.variables
        ],
        "timeout_seconds": runbook.timeout_seconds,
        "retry_policy": runbook.retry_policy.to_dict() if runbook.retry_policy else None,
        "rollback_steps": runbook.rollback_steps,
        "rollback_trigger_on": list(runbook.rollback_trigger_on),
    }


def _validate(document: Mapping[str, Any]) -> RunbookSpec:
    try:
        return RunbookSpec.model_validate(dict(document))
    except ValidationError as e:
        raise RunbookValidationError(format_validation_error(e), cause=e) from e


class RunbookCatalog:
    """Versioned runbook storage on top of a :class:`RunbookStore`."""

    def __init__(self, store: RunbookStore) -> None:
        self._store = store

    def create(
        self,
        definition: RunbookSpec | Mapping[str, Any],
        *,
        owner_id: str | None = None,
        status: RunbookStatus = RunbookStatus.ACTIVE,
    ) -> Runbook:
        """Validate and store a new runbook (version 1 of a new lineage).

        Raises:
            RunbookValidationError: If the definition is invalid.
        """
        spec = definition if isinstance(definition, RunbookSpec) else _validate(definition)
        runbook = self._store.create_runbook(spec.to_runbook(owner_id=owner_id, status=status))
        logger.info("catalog.created", runbook_id=runbook.id, name=runbook.name)
        return runbook

    def create_from_yaml(self, path: str | Path, *, owner_id: str | None = None) -> Runbook:
        return self.create(RunbookSpec.from_yaml_file(path), owner_id=owner_id)

    def get(self, runbook_id: str) -> Runbook:
        runbook = self._store.get_runbook(runbook_id)
        if runbook is None:
            raise RunbookNotFoundError(runbook_id)
        return runbook

    def update(
        self,
        runbook_id: str,
        changes: Mapping[str, Any],
        *,
        new_version: bool = False,
    ) -> Runbook:
        """Apply ``changes`` in place, or fork them into a new version.

        ``changes`` uses the document field names (``steps``,
        ``parameters``, ``timeout_seconds`` ...) plus ``status`` and
        ``owner_id``.

        Raises:
            RunbookNotFoundError: Unknown runbook
            RunbookValidationError: Unknown field or invalid result
        """
        current = self.get(runbook_id)
        unknown = set(changes) - _DOCUMENT_FIELDS - _RECORD_FIELDS
        if unknown:
            raise RunbookValidationError(f"Unknown runbook fields: {sorted(unknown)}")

        document = _document(current)
        document.update({k: v for k, v in changes.items() if k in _DOCUMENT_FIELDS})
        merged = _validate(document).to_runbook(
            status=RunbookStatus(changes.get("status", current.status)),
            owner_id=changes.get("owner_id", current.owner_id),
        )

        if not new_version:
            fields = {
                name: getattr(merged, name)
                for name in (*_DOCUMENT_FIELDS, *_RECORD_FIELDS)
            }
            updated = self._store.update_runbook(current.id, **fields)
            logger.info("catalog.updated", runbook_id=current.id, version=current.version)
            return updated

        latest = self.latest(current.id)
        merged.version = latest.version + 1
        merged.parent_id = current.id
        merged.is_latest = True
        merged.created_at = merged.updated_at = utcnow()
        self._store.update_runbook(latest.id, is_latest=False)
        forked = self._store.create_runbook(merged)
        logger.info(
            "catalog.versioned",
            runbook_id=forked.id,
            parent_id=current.id,
            version=forked.version,
        )
        return forked

    def archive(self, runbook_id: str) -> Runbook:
        return self._store.update_runbook(self.get(runbook_id).id, status=RunbookStatus.ARCHIVED)

    def versions(self, runbook_id: str) -> list[Runbook]:
        """Every version in the lineage of ``runbook_id``, oldest first."""
        root = self._root_id(self.get(runbook_id))
        lineage = [r for r in self._store.list_runbooks() if self._root_id(r) == root]
        return sorted(lineage, key=lambda r: r.version)

    def latest(self, runbook_id: str) -> Runbook:
        """The ``is_latest`` version of the lineage of ``runbook_id``."""
        lineage = self.versions(runbook_id)
        for runbook in lineage:
            if runbook.is_latest:
                return runbook
        return lineage[-1]

    def list_runbooks(self, *, name: str | None = None, latest_only: bool = True) -> list[Runbook]:
        return self._store.list_runbooks(name=name, latest_only=latest_only)

    def _root_id(self, runbook: Runbook) -> str:
        seen = {runbook.id}
        while runbook.parent_id:
            parent = self._store.get_runbook(runbook.parent_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            runbook = parent
        return runbook.id


__all__ = ["RunbookCatalog"]
