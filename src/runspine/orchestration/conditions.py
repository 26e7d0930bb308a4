"""Condition evaluation for CONDITIONAL steps.

Three condition types are supported:

``expression``
    A Jinja2 expression over the template namespace, e.g.
    ``steps.health.output.status_code == 200 and params.force``.
    The result's truthiness decides the branch.

``previous_step_status``
    Compares the latest status of ``step_id`` with ``expected_status``
    (``operator`` ``==`` or ``!=``).

``variable_check``
    Compares a variable (falling back to an input parameter of the same
    name) with ``value`` using ``operator``.

Anything that cannot be evaluated (unknown step, missing variable,
incomparable types, bad expression) raises :class:`ConditionError`, a
configuration error that fails the run.
"""

from __future__ import annotations

import operator as op
import re
from collections.abc import Callable
from typing import Any

from runspine.core.errors import ConditionError, TemplateError
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.step_types import Condition
from runspine.orchestration.templating import evaluate_expression, render_value


def _contains(left: Any, right: Any) -> bool:
    return right in left


def _matches(left: Any, right: Any) -> bool:
    return re.search(str(right), str(left)) is not None


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": op.eq,
    "!=": op.ne,
    ">": op.gt,
    "<": op.lt,
    ">=": op.ge,
    "<=": op.le,
    "contains": _contains,
    "matches": _matches,
}


def compare(left: Any, operator: str, right: Any) -> bool:
    try:
        fn = OPERATORS[operator]
    except KeyError:
        raise ConditionError(f"Unknown operator: {operator}") from None
    try:
        return bool(fn(left, right))
    except (TypeError, re.error) as e:
        raise ConditionError(
            f"Cannot compare {left!r} {operator} {right!r}: {e}", cause=e
        ) from e


def _strip_braces(expression: str) -> str:
    stripped = expression.strip()
    if stripped.startswith("{{") and stripped.endswith("}}"):
        return stripped[2:-2].strip()
    return stripped


def evaluate_condition(condition: Condition, context: ExecutionContext) -> bool:
    """Evaluate ``condition`` against the current execution state.

    Raises:
        ConditionError: If the condition cannot be evaluated.
    """
    namespace = context.template_namespace()

    if condition.type == "expression":
        if not condition.expression:
            raise ConditionError("Expression condition has no expression")
        try:
            return bool(evaluate_expression(_strip_braces(condition.expression), namespace))
        except TemplateError as e:
            raise ConditionError(e.message, cause=e) from e

    if condition.type == "previous_step_status":
        result = context.get_step_result(condition.step_id or "")
        if result is None:
            raise ConditionError(f"Step '{condition.step_id}' has no result to check")
        if condition.operator not in ("==", "!="):
            raise ConditionError(
                f"Operator {condition.operator!r} not supported for step status checks"
            )
        expected = (condition.expected_status or "").upper()
        return compare(result.status.value, condition.operator, expected)

    if condition.type == "variable_check":
        name = condition.variable or ""
        if name in context.variables:
            left = context.variables[name]
        elif name in context.parameters:
            left = context.parameters[name]
        else:
            raise ConditionError(f"Variable '{name}' is not defined")
        try:
            right = render_value(condition.value, namespace)
        except TemplateError as e:
            raise ConditionError(e.message, cause=e) from e
        return compare(left, condition.operator, right)

    raise ConditionError(f"Unknown condition type: {condition.type}")


__all__ = ["OPERATORS", "compare", "evaluate_condition"]
