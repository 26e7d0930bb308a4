"""Tests for PARALLEL and CONDITIONAL container steps run through the engine."""

import time

from runspine.orchestration.models import ExecutionStatus, StepStatus
from tests._support import conditional_step, http_step, parallel_step, step, wait_step


def _rows(store, execution_id):
    return {r.step_id: r for r in store.list_step_results(execution_id)}


# ---------------------------------------------------------------------------
# PARALLEL
# ---------------------------------------------------------------------------


class TestParallel:
    async def test_children_run_concurrently(self, make_runbook, run_runbook, store):
        children = [wait_step(f"w{i}", duration=0.2) for i in range(3)]
        runbook = make_runbook([parallel_step("fan", children), wait_step("after")])

        started = time.monotonic()
        execution = await run_runbook(runbook)

        assert time.monotonic() - started < 0.55
        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.total_steps == 5
        rows = store.list_step_results(execution.id)
        assert [r.step_index for r in rows] == [0, 1, 2, 3, 4]
        assert rows[0].step_id == "fan"
        assert rows[0].output["results"] == {"w0": "SUCCESS", "w1": "SUCCESS", "w2": "SUCCESS"}

    async def test_partial_failure_tolerated_by_default(self, make_runbook, run_runbook, store, http):
        http.add("/bad", 500)
        runbook = make_runbook([parallel_step("fan", [http_step("good"), http_step("bad", "/bad")])])
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.SUCCESS
        fan = _rows(store, execution.id)["fan"]
        assert fan.output["succeeded"] == 1
        assert fan.output["failed"] == 1

    async def test_all_failed_still_succeeds(self, make_runbook, run_runbook, store, http):
        http.add("/bad", 500)
        runbook = make_runbook(
            [parallel_step("fan", [http_step("a", "/bad"), http_step("b", "/bad")]), wait_step("after")]
        )
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.SUCCESS
        rows = _rows(store, execution.id)
        assert rows["fan"].status == StepStatus.SUCCESS
        assert rows["fan"].output["succeeded"] == 0
        assert rows["fan"].output["failed"] == 2
        assert rows["fan"].output["results"] == {"a": "FAILED", "b": "FAILED"}
        assert rows["after"].status == StepStatus.SUCCESS

    async def test_fatal_child_fails_parallel(self, make_runbook, run_runbook, store):
        children = [wait_step("ok"), step("ghost", "SQL", {"query": "SELECT 1", "secret_name": "absent"})]
        execution = await run_runbook(make_runbook([parallel_step("fan", children)]))

        assert execution.status == ExecutionStatus.FAILED
        fan = _rows(store, execution.id)["fan"]
        assert fan.status == StepStatus.FAILED
        assert fan.error.category == "CONFIGURATION"

    async def test_fail_on_any_error(self, make_runbook, run_runbook, store, http):
        http.add("/bad", 500)
        runbook = make_runbook(
            [parallel_step("fan", [http_step("good"), http_step("bad", "/bad")], fail_on_any_error=True)]
        )
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.FAILED
        fan = _rows(store, execution.id)["fan"]
        assert fan.output["failed_step"] == "bad"
        assert fan.error.code == "HTTP_500"

    async def test_fail_on_any_error_tolerates_continue_on_error(self, make_runbook, run_runbook, http):
        http.add("/bad", 500)
        children = [http_step("good"), http_step("bad", "/bad", continue_on_error=True)]
        runbook = make_runbook([parallel_step("fan", children, fail_on_any_error=True)])
        assert (await run_runbook(runbook)).status == ExecutionStatus.SUCCESS

    async def test_first_success_abandons_the_rest(self, make_runbook, run_runbook, store):
        children = [wait_step("fast", duration=0.01), wait_step("slow", duration=5)]
        runbook = make_runbook([parallel_step("race", children, wait_for_all=False)])

        started = time.monotonic()
        execution = await run_runbook(runbook)

        assert time.monotonic() - started < 2
        assert execution.status == ExecutionStatus.SUCCESS
        rows = _rows(store, execution.id)
        assert rows["race"].output["winner"] == "fast"
        assert rows["slow"].status == StepStatus.SKIPPED

    async def test_first_success_after_failures(self, make_runbook, run_runbook, store, http):
        http.add("/bad", 500)
        http.delay("/late", 0.1)
        children = [http_step("bad", "/bad"), http_step("late", "/late")]
        runbook = make_runbook([parallel_step("race", children, wait_for_all=False)])
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.SUCCESS
        assert _rows(store, execution.id)["race"].output["winner"] == "late"

    async def test_first_success_with_no_winner(self, make_runbook, run_runbook, store, http):
        http.add("/bad", 500)
        children = [http_step("a", "/bad"), http_step("b", "/bad")]
        execution = await run_runbook(make_runbook([parallel_step("race", children, wait_for_all=False)]))

        assert execution.status == ExecutionStatus.SUCCESS
        race = _rows(store, execution.id)["race"]
        assert race.output["winner"] is None
        assert race.output["failed"] == 2

    async def test_child_retries_get_their_own_rows(self, make_runbook, run_runbook, store, http):
        http.add("/flaky", 500, 200)
        child = http_step("flaky", "/flaky", retry_count=1, retry_delay_ms=0)
        execution = await run_runbook(make_runbook([parallel_step("fan", [child])]))

        attempts = [r.attempt_number for r in store.list_step_results(execution.id) if r.step_id == "flaky"]
        assert attempts == [1, 2]


# ---------------------------------------------------------------------------
# CONDITIONAL
# ---------------------------------------------------------------------------


class TestConditional:
    def _runbook(self, make_runbook, condition, **fields):
        return make_runbook(
            [
                conditional_step(
                    "gate",
                    condition,
                    on_true=[wait_step("yes1"), wait_step("yes2")],
                    on_false=[wait_step("no")],
                ),
                wait_step("after"),
            ],
            **fields,
        )

    async def test_true_branch(self, make_runbook, run_runbook, store):
        runbook = self._runbook(
            make_runbook,
            {"type": "variable_check", "variable": "region", "value": "eu"},
            parameters=[{"name": "region", "default": "eu"}],
        )
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.SUCCESS
        rows = _rows(store, execution.id)
        assert rows["gate"].output == {"condition": True, "branch": "on_true"}
        assert rows["yes1"].status == StepStatus.SUCCESS
        assert rows["yes2"].status == StepStatus.SUCCESS
        assert rows["no"].status == StepStatus.SKIPPED
        assert rows["no"].output["reason"] == "branch on_true taken"
        assert execution.current_step_index == execution.total_steps == 5

    async def test_false_branch(self, make_runbook, run_runbook, store):
        runbook = self._runbook(make_runbook, {"type": "expression", "expression": "params.region == 'us'"})
        execution = await run_runbook(runbook, {"region": "eu"})

        rows = _rows(store, execution.id)
        assert rows["gate"].output["branch"] == "on_false"
        assert rows["no"].status == StepStatus.SUCCESS
        assert {rows["yes1"].status, rows["yes2"].status} == {StepStatus.SKIPPED}

    async def test_previous_step_status(self, make_runbook, run_runbook, store, http):
        http.add("/health", 503)
        runbook = make_runbook(
            [
                http_step("health", "/health", continue_on_error=True),
                conditional_step(
                    "recover",
                    {"type": "previous_step_status", "step_id": "health", "expected_status": "FAILED"},
                    on_true=[http_step("restart", "/restart", method="POST")],
                ),
            ]
        )
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.SUCCESS
        assert http.count("/restart") == 1

    async def test_branch_failure_leaves_rest_of_branch_unrun(self, make_runbook, run_runbook, store, http):
        http.add("/bad", 500)
        runbook = make_runbook(
            [
                conditional_step(
                    "gate",
                    {"type": "expression", "expression": "true"},
                    on_true=[http_step("bad", "/bad"), wait_step("later")],
                )
            ]
        )
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.FAILED
        rows = _rows(store, execution.id)
        assert "later" not in rows
        assert rows["bad"].status == StepStatus.FAILED
        assert rows["gate"].output["failed_step"] == "bad"
        assert execution.error_message.startswith("Step 'gate' failed: Step 'bad' in branch on_true failed")

    async def test_bad_condition_is_fatal(self, make_runbook, run_runbook, store):
        runbook = make_runbook(
            [
                conditional_step(
                    "gate",
                    {"type": "variable_check", "variable": "ghost", "value": 1},
                    on_true=[wait_step("t")],
                    continue_on_error=True,
                ),
                wait_step("after"),
            ]
        )
        execution = await run_runbook(runbook)

        assert execution.status == ExecutionStatus.FAILED
        rows = _rows(store, execution.id)
        assert rows["gate"].error.category == "CONFIGURATION"
        assert rows["t"].status == StepStatus.SKIPPED
        assert "after" not in rows
