"""
Jinja2 templating for step configuration.

String values in a step's config may reference execution state::

    url: "https://{{ params.host }}/api/{{ variables.api_version }}"
    headers: {Authorization: "Bearer {{ secrets.api_token }}"}
    body: "{{ steps.fetch.output.body }}"

Available names (see ``ExecutionContext.template_namespace``):

- ``params``    - execution input parameters
- ``variables`` - runbook variables
- ``secrets``   - resolved secrets
- ``steps``     - ``steps.<id>.status`` / ``.output`` / ``.error``
- ``execution`` - ``id``, ``runbook_id``, ``environment``, ``triggered_by``

A string that is a single ``{{ expression }}`` evaluates to the value
itself (dict, list, number); mixed content renders to a string.
Undefined references raise :class:`TemplateError` (a configuration
error, so the step is never retried).

Rendering uses a sandboxed environment: templates come from runbook
authors, not from the engine.
"""

from __future__ import annotations

import dataclasses
from typing import Any, TypeVar

from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from runspine.core.errors import TemplateError
from runspine.orchestration.step_types import BaseStep, Condition

S = TypeVar("S", bound=BaseStep)

_env = SandboxedEnvironment(
    autoescape=False,
    undefined=StrictUndefined,
    trim_blocks=False,
    lstrip_blocks=False,
)

# Config fields that hold nested steps or conditions; those are rendered
# when (and if) they run.
_SKIP_TYPES = (BaseStep, Condition)


def has_template(value: str) -> bool:
    return "{{" in value or "{%" in value


def evaluate_expression(expression: str, namespace: dict[str, Any]) -> Any:
    """Evaluate a bare Jinja2 expression (no braces) to a Python value.

    Raises:
        TemplateError: On syntax errors or undefined names.
    """
    try:
        compiled = _env.compile_expression(expression, undefined_to_none=False)
        value = compiled(**namespace)
        # Force StrictUndefined to raise if the expression resolved to one.
        if isinstance(value, StrictUndefined):
            str(value)
        return value
    except JinjaTemplateError as e:
        raise TemplateError(f"Cannot evaluate '{expression}': {e.message}", cause=e) from e


def render_string(value: str, namespace: dict[str, Any]) -> Any:
    """Render one string.

    Handles:
    1. Pure expression: ``"{{ params.count }}"`` -> the value itself (any type)
    2. Mixed content: ``"Hello {{ params.name }}!"`` -> interpolated string
    """
    if not has_template(value):
        return value

    stripped = value.strip()
    if stripped.startswith("{{") and stripped.endswith("}}"):
        inner = stripped[2:-2]
        if "{{" not in inner and "}}" not in inner:
            return evaluate_expression(inner.strip(), namespace)

    try:
        return _env.from_string(value).render(**namespace)
    except JinjaTemplateError as e:
        raise TemplateError(f"Cannot render template '{value}': {e.message}", cause=e) from e


def render_value(value: Any, namespace: dict[str, Any]) -> Any:
    """Recursively render strings inside dicts, lists and tuples."""
    if isinstance(value, str):
        return render_string(value, namespace)
    if isinstance(value, dict):
        return {k: render_value(v, namespace) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, namespace) for v in value]
    if isinstance(value, tuple):
        if value and all(isinstance(v, _SKIP_TYPES) for v in value):
            return value
        return tuple(render_value(v, namespace) for v in value)
    if dataclasses.is_dataclass(value) and not isinstance(value, (type, *_SKIP_TYPES)):
        return _render_dataclass(value, namespace)
    return value


def _render_dataclass(obj: Any, namespace: dict[str, Any]) -> Any:
    changes = {}
    for f in dataclasses.fields(obj):
        current = getattr(obj, f.name)
        rendered = render_value(current, namespace)
        if rendered is not current:
            changes[f.name] = rendered
    return dataclasses.replace(obj, **changes) if changes else obj


def render_step(step: S, namespace: dict[str, Any]) -> S:
    """Return ``step`` with every template in its config rendered."""
    config = getattr(step, "config", None)
    if config is None:
        return step
    rendered = _render_dataclass(config, namespace)
    if rendered is config:
        return step
    return dataclasses.replace(step, config=rendered)


__all__ = [
    "has_template",
    "evaluate_expression",
    "render_string",
    "render_value",
    "render_step",
]
