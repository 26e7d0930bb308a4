"""Tests for CONDITIONAL step condition evaluation."""

import pytest

from runspine.core.errors import ConditionError
from runspine.orchestration.conditions import compare, evaluate_condition
from runspine.orchestration.models import StepExecutionResult, StepStatus
from runspine.orchestration.step_types import Condition


@pytest.fixture
def ctx(context):
    context.parameters = {"region": "eu", "force": True}
    context.variables = {"replicas": 3, "release": "v1.4.2"}
    context.record_result(
        StepExecutionResult(
            execution_id=context.execution_id,
            step_index=0,
            step_id="health",
            step_name="Health",
            step_kind="HTTP",
            status=StepStatus.SUCCESS,
            output={"status_code": 200},
        )
    )
    return context


class TestCompare:
    @pytest.mark.parametrize(
        "left, operator, right, expected",
        [
            (3, "==", 3, True),
            (3, "!=", 3, False),
            (3, ">", 2, True),
            (3, "<=", 2, False),
            ("eu-west", "contains", "west", True),
            (["a", "b"], "contains", "c", False),
            ("v1.4.2", "matches", r"^v1\.\d+", True),
        ],
    )
    def test_operators(self, left, operator, right, expected):
        assert compare(left, operator, right) is expected

    def test_incomparable_types(self):
        with pytest.raises(ConditionError):
            compare("a", ">", 1)

    def test_unknown_operator(self):
        with pytest.raises(ConditionError):
            compare(1, "~", 1)


class TestEvaluate:
    def test_expression(self, ctx):
        condition = Condition(type="expression", expression="steps.health.output.status_code == 200 and params.force")
        assert evaluate_condition(condition, ctx) is True

    def test_expression_with_braces(self, ctx):
        assert evaluate_condition(Condition(type="expression", expression="{{ variables.replicas > 5 }}"), ctx) is False

    def test_expression_with_undefined_name(self, ctx):
        with pytest.raises(ConditionError):
            evaluate_condition(Condition(type="expression", expression="steps.nope.status == 'SUCCESS'"), ctx)

    def test_previous_step_status(self, ctx):
        assert evaluate_condition(
            Condition(type="previous_step_status", step_id="health", expected_status="success"), ctx
        )
        assert not evaluate_condition(
            Condition(type="previous_step_status", step_id="health", expected_status="SUCCESS", operator="!="),
            ctx,
        )

    def test_previous_step_without_result(self, ctx):
        with pytest.raises(ConditionError):
            evaluate_condition(Condition(type="previous_step_status", step_id="later", expected_status="SUCCESS"), ctx)

    def test_variable_check(self, ctx):
        assert evaluate_condition(Condition(type="variable_check", variable="replicas", operator=">=", value=3), ctx)

    def test_variable_check_falls_back_to_params(self, ctx):
        assert evaluate_condition(Condition(type="variable_check", variable="region", value="eu"), ctx)

    def test_variable_check_value_is_rendered(self, ctx):
        condition = Condition(type="variable_check", variable="region", value="{{ params.region }}")
        assert evaluate_condition(condition, ctx)

    def test_missing_variable(self, ctx):
        with pytest.raises(ConditionError):
            evaluate_condition(Condition(type="variable_check", variable="ghost", value=1), ctx)
