"""Tests for execution input parameter validation."""

import pytest

from runspine.core.errors import ParameterValidationError
from runspine.orchestration.models import ParameterDeclaration
from runspine.orchestration.parameters import validate_parameters


def test_defaults_fill_missing():
    decls = [ParameterDeclaration("region", default="eu"), ParameterDeclaration("dry_run", type="boolean", default=False)]
    assert validate_parameters(decls, {}) == {"region": "eu", "dry_run": False}


def test_undeclared_pass_through():
    assert validate_parameters([], {"extra": 1}) == {"extra": 1}


@pytest.mark.parametrize(
    "decl, raw, expected",
    [
        (ParameterDeclaration("n", type="number"), "3", 3),
        (ParameterDeclaration("n", type="number"), "2.5", 2.5),
        (ParameterDeclaration("b", type="boolean"), "yes", True),
        (ParameterDeclaration("b", type="boolean"), "off", False),
        (ParameterDeclaration("m", type="multiselect", options=("a", "b")), "a, b", ["a", "b"]),
        (ParameterDeclaration("s"), 42, "42"),
    ],
)
def test_coercion(decl, raw, expected):
    assert validate_parameters([decl], {decl.name: raw})[decl.name] == expected


def test_all_errors_reported_together():
    decls = [
        ParameterDeclaration("region", type="select", options=("eu", "us"), required=True),
        ParameterDeclaration("replicas", type="number", min=1, max=10),
        ParameterDeclaration("ticket", pattern=r"OPS-\d+", required=True),
        ParameterDeclaration("owner", required=True),
    ]
    with pytest.raises(ParameterValidationError) as exc:
        validate_parameters(decls, {"region": "ap", "replicas": "50", "ticket": "JIRA-1"})

    errors = exc.value.errors
    assert len(errors) == 4
    assert any(e.startswith("region: must be one of") for e in errors)
    assert "replicas: must be <= 10" in errors
    assert any(e.startswith("ticket: does not match") for e in errors)
    assert "owner: required" in errors


def test_type_errors():
    decls = [ParameterDeclaration("n", type="number"), ParameterDeclaration("b", type="boolean")]
    with pytest.raises(ParameterValidationError) as exc:
        validate_parameters(decls, {"n": "many", "b": "perhaps"})
    assert exc.value.errors == ["n: expected a number", "b: expected a boolean"]


def test_string_length_limits():
    decls = [ParameterDeclaration("name", min_length=3, max_length=5)]
    with pytest.raises(ParameterValidationError):
        validate_parameters(decls, {"name": "ab"})
    assert validate_parameters(decls, {"name": "abcd"}) == {"name": "abcd"}
