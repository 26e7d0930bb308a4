"""Tests for runbook document validation and step tree parsing."""

import textwrap

import pytest
from pydantic import ValidationError

from runspine.core.errors import RunbookValidationError
from runspine.orchestration.models import BackoffStrategy, Environment, RetryOn
from runspine.orchestration.runbook_spec import RunbookSpec, parse_steps
from runspine.orchestration.step_types import (
    ConditionalStep,
    HttpStep,
    ManualStep,
    ParallelStep,
    StepKind,
    StepPlan,
    count_steps,
)
from tests._support import conditional_step, http_step, manual_step, parallel_step, wait_step

RESTART_API = textwrap.dedent(
    """
    name: restart-api
    environment: STAGING
    timeoutSeconds: 600
    parameters:
      - name: region
        type: select
        required: true
        options: [eu, us]
    variables:
      - name: api_version
        value: v2
    retryPolicy:
      maxAttempts: 3
      backoffStrategy: exponential
      initialDelay: 250
      retryOn: [http_5xx, timeout]
    steps:
      - id: drain
        name: Drain traffic
        type: HTTP
        timeout: 30
        retryCount: 2
        config:
          url: https://lb.internal/{{ params.region }}/drain
          method: post
          expectedStatusCodes: [200, 202]
          validateResponse:
            jsonPath: $.state
            expectedValue: drained
      - id: approve
        name: Confirm restart
        type: MANUAL
        config:
          approvers: [oncall-lead]
          expiresAfter: 900
      - id: settle
        name: Settle
        type: WAIT
        config: {duration: 30}
    rollbackSteps:
      - id: undrain
        name: Restore traffic
        type: HTTP
        config:
          url: https://lb.internal/{{ params.region }}/undrain
          method: POST
    """
)


# ---------------------------------------------------------------------------
# Runbook documents
# ---------------------------------------------------------------------------


class TestRunbookSpec:
    def test_yaml_document(self):
        spec = RunbookSpec.from_yaml(RESTART_API)
        runbook = spec.to_runbook(owner_id="alice")

        assert runbook.name == "restart-api"
        assert runbook.environment == Environment.STAGING
        assert runbook.timeout_seconds == 600
        assert runbook.owner_id == "alice"
        assert runbook.parameters[0].options == ("eu", "us")
        assert runbook.default_variables == {"api_version": "v2"}
        assert runbook.retry_policy.backoff_strategy == BackoffStrategy.EXPONENTIAL
        assert runbook.retry_policy.initial_delay_ms == 250
        assert runbook.retry_policy.retry_on == (RetryOn.HTTP_5XX, RetryOn.TIMEOUT)
        assert [s["id"] for s in runbook.steps] == ["drain", "approve", "settle"]
        assert runbook.rollback_trigger_on == ["failure"]

    def test_stored_documents_parse_back(self):
        runbook = RunbookSpec.from_yaml(RESTART_API).to_runbook()
        steps, rollback = parse_steps(runbook.steps, runbook.rollback_steps)

        drain = steps[0]
        assert isinstance(drain, HttpStep)
        assert drain.config.method == "POST"
        assert drain.config.expected_status_codes == (200, 202)
        assert drain.config.validate_response.expected_value == "drained"
        assert drain.timeout_seconds == 30
        assert drain.retry_count == 2
        assert isinstance(steps[1], ManualStep)
        assert steps[1].config.expires_after == 900
        assert [s.id for s in rollback] == ["undrain"]

    def test_invalid_yaml(self):
        with pytest.raises(RunbookValidationError, match="Invalid YAML"):
            RunbookSpec.from_yaml("name: [unclosed")

    def test_unknown_step_type(self):
        with pytest.raises(ValidationError):
            RunbookSpec.model_validate({"name": "x", "steps": [{"id": "a", "name": "a", "type": "FTP"}]})

    def test_duplicate_parameter_names(self):
        with pytest.raises(ValidationError, match="Duplicate parameter"):
            RunbookSpec.model_validate({"name": "x", "parameters": [{"name": "a"}, {"name": "a"}]})

    def test_duplicate_ids_across_rollback(self):
        with pytest.raises(ValidationError, match="Duplicate step ids"):
            RunbookSpec.model_validate(
                {"name": "x", "steps": [wait_step("a")], "rollback_steps": [wait_step("a")]}
            )


# ---------------------------------------------------------------------------
# Step trees
# ---------------------------------------------------------------------------


class TestParseSteps:
    def test_snake_and_camel_case(self):
        steps, _ = parse_steps(
            [
                http_step("a", continue_on_error=True, retry_delay_ms=10),
                {"id": "b", "name": "b", "type": "WAIT", "continueOnError": True, "config": {"duration": 1}},
            ]
        )
        assert steps[0].continue_on_error and steps[0].retry_delay_ms == 10
        assert steps[1].continue_on_error

    def test_editor_layout_keys_ignored(self):
        doc = wait_step("a")
        doc["position"] = {"x": 10, "y": 20}
        steps, _ = parse_steps([doc])
        assert steps[0].kind == StepKind.WAIT

    def test_nested_containers(self):
        tree = [
            wait_step("first"),
            parallel_step("fan", [http_step("p1"), http_step("p2")]),
            conditional_step(
                "check",
                {"type": "previous_step_status", "step_id": "fan", "expected_status": "SUCCESS"},
                on_true=[wait_step("yes")],
                on_false=[wait_step("no")],
            ),
        ]
        steps, _ = parse_steps(tree)
        assert isinstance(steps[1], ParallelStep)
        assert isinstance(steps[2], ConditionalStep)
        assert count_steps(steps) == 7

        plan = StepPlan(steps)
        assert plan.indices == {"first": 0, "fan": 1, "p1": 2, "p2": 3, "check": 4, "yes": 5, "no": 6}
        assert plan.size_of(steps[1]) == 3
        assert [i for i, _ in plan.top_level_from(2)] == [4]

    def test_manual_inside_container_rejected(self):
        with pytest.raises(RunbookValidationError, match="top-level"):
            parse_steps([parallel_step("fan", [manual_step("gate")])])

    def test_manual_in_rollback_rejected(self):
        with pytest.raises(RunbookValidationError, match="rollback"):
            parse_steps([wait_step("a")], [manual_step("gate")])

    def test_unknown_status_reference(self):
        condition = {"type": "previous_step_status", "step_id": "ghost", "expected_status": "SUCCESS"}
        with pytest.raises(RunbookValidationError, match="unknown step 'ghost'"):
            parse_steps([conditional_step("c", condition)])

    def test_bad_operator(self):
        condition = {"type": "variable_check", "variable": "x", "operator": "~=", "value": 1}
        with pytest.raises(RunbookValidationError):
            parse_steps([conditional_step("c", condition)])

    def test_sql_requires_connection(self):
        with pytest.raises(RunbookValidationError):
            parse_steps([{"id": "q", "name": "q", "type": "SQL", "config": {"query": "select 1"}}])

    def test_negative_wait_rejected(self):
        with pytest.raises(RunbookValidationError):
            parse_steps([wait_step("w", duration=-1)])
