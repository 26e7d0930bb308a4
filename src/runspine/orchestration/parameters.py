"""Input parameter validation.

Execution inputs are checked against the runbook's parameter declarations
before an execution is created.  Declared defaults fill in missing
values, CLI-style strings are coerced to the declared type, and every
problem is collected so the caller sees them all at once.

Example:
    >>> decls = [ParameterDeclaration("replicas", type="number", required=True, min=1)]
    >>> validate_parameters(decls, {"replicas": "3"})
    {'replicas': 3}
"""

from __future__ import annotations

import re
from typing import Any

from runspine.core.errors import ParameterValidationError
from runspine.orchestration.models import ParameterDeclaration

_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off"}


def _coerce(decl: ParameterDeclaration, value: Any) -> Any:
    if decl.type == "number":
        if isinstance(value, bool):
            raise ValueError("expected a number")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                number = float(value)
            except ValueError:
                raise ValueError("expected a number") from None
            return int(number) if number.is_integer() and "." not in value else number
        raise ValueError("expected a number")
    if decl.type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in _TRUE | _FALSE:
            return value.lower() in _TRUE
        raise ValueError("expected a boolean")
    if decl.type == "multiselect":
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise ValueError("expected a list")
    if not isinstance(value, str):
        return str(value)
    return value


def _check(decl: ParameterDeclaration, value: Any) -> list[str]:
    errors: list[str] = []
    name = decl.name
    if decl.type == "number":
        if decl.min is not None and value < decl.min:
            errors.append(f"{name}: must be >= {decl.min:g}")
        if decl.max is not None and value > decl.max:
            errors.append(f"{name}: must be <= {decl.max:g}")
    if decl.type == "select" and decl.options and value not in decl.options:
        errors.append(f"{name}: must be one of {list(decl.options)}")
    if decl.type == "multiselect" and decl.options:
        invalid = [v for v in value if v not in decl.options]
        if invalid:
            errors.append(f"{name}: invalid options {invalid}")
    if isinstance(value, str):
        if decl.min_length is not None and len(value) < decl.min_length:
            errors.append(f"{name}: must be at least {decl.min_length} characters")
        if decl.max_length is not None and len(value) > decl.max_length:
            errors.append(f"{name}: must be at most {decl.max_length} characters")
        if decl.pattern and re.fullmatch(decl.pattern, value) is None:
            errors.append(f"{name}: does not match pattern {decl.pattern!r}")
    return errors


def validate_parameters(
    declarations: list[ParameterDeclaration],
    params: dict[str, Any] | None,
) -> dict[str, Any]:
    """Validate ``params`` and merge them over declared defaults.

    Undeclared parameters pass through unchanged.

    Raises:
        ParameterValidationError: With every problem found in ``errors``.
    """
    supplied = dict(params or {})
    resolved: dict[str, Any] = {}
    errors: list[str] = []

    for decl in declarations:
        if decl.name in supplied and supplied[decl.name] is not None:
            raw = supplied.pop(decl.name)
        elif decl.default is not None:
            supplied.pop(decl.name, None)
            raw = decl.default
        else:
            supplied.pop(decl.name, None)
            if decl.required:
                errors.append(f"{decl.name}: required")
            continue

        try:
            value = _coerce(decl, raw)
        except ValueError as e:
            errors.append(f"{decl.name}: {e}")
            continue
        errors.extend(_check(decl, value))
        resolved[decl.name] = value

    resolved.update(supplied)

    if errors:
        raise ParameterValidationError(
            "Invalid parameters: " + "; ".join(errors), errors=errors
        )
    return resolved


__all__ = ["validate_parameters"]
