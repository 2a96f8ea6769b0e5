"""Tests for the execution state machine."""

import asyncio

import pytest

from stageflow.core.errors import ConflictError, EmptyWorkflowError, InvalidInputError, NotFoundError
from stageflow.models import Execution, Stage
from stageflow.schemas.execution import ExecutionLogResponse, ExecutionResponse
from stageflow.services.executor import ExecutionStateMachine, bind_stage_output, process_output


@pytest.fixture
def machine(db):
    return ExecutionStateMachine(db)


class TestOutputHelpers:

    def test_process_output_decodes_json(self):
        assert process_output('  {"a": 1} ') == {"a": 1}
        assert process_output("[1, 2]") == [1, 2]

    def test_process_output_falls_back_to_text(self):
        assert process_output("  plain answer\n") == "plain answer"
        assert process_output(None) is None

    def test_bind_stage_output_from_object(self):
        stage = Stage(stage_order=2, output_variables=["title", "missing"])

        context = bind_stage_output({"topic": "x"}, stage, {"title": "T", "body": "B"})

        assert context == {
            "topic": "x",
            "stage_2_output": {"title": "T", "body": "B"},
            "title": "T",
            "missing": None,
        }

    def test_bind_stage_output_from_text(self):
        stage = Stage(stage_order=1, output_variables=["summary"])

        context = bind_stage_output(None, stage, "short text")

        assert context == {"stage_1_output": "short text", "summary": "short text"}

    def test_bind_does_not_mutate_original_context(self):
        original = {"a": 1}
        bind_stage_output(original, Stage(stage_order=1, output_variables=[]), "x")

        assert original == {"a": 1}


class TestStartExecution:

    async def test_starts_at_lowest_stage_order(self, machine, make_workflow):
        workflow, _ = await make_workflow([{"stage_order": 5}, {"stage_order": 3}, {"stage_order": 9}])

        execution = await machine.start_execution(workflow.id, "user-1", {"topic": "cats"})

        assert execution.status == "running"
        assert execution.current_stage_order == 3
        assert execution.execution_inputs == {"topic": "cats"}
        assert execution.execution_context == {"topic": "cats"}
        assert execution.completed_at is None

    async def test_empty_workflow(self, machine, make_workflow):
        workflow, _ = await make_workflow([])

        with pytest.raises(EmptyWorkflowError):
            await machine.start_execution(workflow.id, "user-1", {})

    async def test_unknown_or_foreign_workflow(self, machine, make_workflow):
        workflow, _ = await make_workflow([{"stage_order": 1}], user_id="someone-else")

        with pytest.raises(NotFoundError):
            await machine.start_execution(workflow.id, "user-1", {})
        with pytest.raises(NotFoundError):
            await machine.start_execution("does-not-exist", "user-1", {})


class TestRecordStageOutcome:

    async def test_pass_advances_to_linked_stage(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [
                {"stage_order": 1, "next_stage_on_pass": 3},
                {"stage_order": 2},
                {"stage_order": 3},
            ]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})

        log = await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="done")

        assert log.status == "completed"
        assert log.validation_result == "pass"
        assert log.retry_count == 0
        assert log.ended_at is not None
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "running"
        assert execution.current_stage_order == 3

    async def test_pass_without_link_completes(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="done")

        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "completed"
        assert execution.completed_at is not None

    async def test_pass_binds_output_into_context(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [
                {"stage_order": 1, "output_variables": ["summary"], "next_stage_on_pass": 2},
                {"stage_order": 2},
            ]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {"topic": "tea"})

        log = await machine.record_stage_outcome(
            execution.id, stages[0].id, "user-1", raw_output='{"summary": "Tea is good"}'
        )

        assert log.processed_output == {"summary": "Tea is good"}
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.execution_context == {
            "topic": "tea",
            "stage_1_output": {"summary": "Tea is good"},
            "summary": "Tea is good",
        }

    async def test_explicit_processed_output_wins(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        log = await machine.record_stage_outcome(
            execution.id, stages[0].id, "user-1", raw_output="raw", processed_output={"parsed": True}
        )

        assert log.processed_output == {"parsed": True}

    async def test_failure_without_retries_halts(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [{"stage_order": 1, "validation_type": "regex", "validation_criteria": "^OK"}]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})

        log = await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="nope")

        assert log.status == "failed"
        assert log.validation_result == "fail"
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "failed"
        assert execution.completed_at is not None
        assert execution.error_message == "Stage 1 failed after 1 attempt(s)"

    async def test_failure_follows_fail_link(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [
                {"stage_order": 1, "validation_type": "regex", "validation_criteria": "^OK", "next_stage_on_fail": 2},
                {"stage_order": 2},
            ]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})

        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="nope")

        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "running"
        assert execution.current_stage_order == 2

    async def test_error_fails_attempt_without_validation(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "validation_type": "manual"}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        log = await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", error="provider down")

        assert log.status == "failed"
        assert log.error_details == "provider down"
        assert log.validation_result is None
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "failed"

    async def test_stale_stage_rejected(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "next_stage_on_pass": 2}, {"stage_order": 2}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        with pytest.raises(ConflictError) as exc_info:
            await machine.record_stage_outcome(execution.id, stages[1].id, "user-1", raw_output="early")
        assert exc_info.value.reason == "stale_stage"

    async def test_terminal_execution_rejects_outcomes(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="done")

        with pytest.raises(ConflictError) as exc_info:
            await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="again")
        assert exc_info.value.reason == "invalid_state"

    async def test_structural_error_fails_execution(self, machine, make_workflow):
        _, foreign = await make_workflow([{"stage_order": 1}], name="Other")
        workflow, stages = await make_workflow([{"stage_order": 1, "next_stage_on_pass": foreign[0].id}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        log = await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="done")

        assert log.status == "completed"
        assert foreign[0].id in log.error_details
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "failed"
        assert foreign[0].id in execution.error_message
        assert execution.completed_at is not None

    async def test_every_transition_bumps_version(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "next_stage_on_pass": 2}, {"stage_order": 2}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        versions = [execution.version]

        await machine.begin_attempt(execution.id, stages[0].id, "user-1", inputs={}, prompt_sent="p")
        versions.append((await machine.get_execution(execution.id, "user-1")).version)
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="x")
        versions.append((await machine.get_execution(execution.id, "user-1")).version)

        assert versions == sorted(set(versions))
        assert len(versions) == 3


class TestRetries:

    async def test_retry_bound_allows_k_plus_one_failures(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [{"stage_order": 1, "validation_type": "regex", "validation_criteria": "^OK", "retry_limit": 2}]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})
        stage_id = stages[0].id

        first = await machine.record_stage_outcome(execution.id, stage_id, "user-1", raw_output="bad")
        assert (await machine.get_execution(execution.id, "user-1")).status == "running"
        second = await machine.record_stage_outcome(execution.id, stage_id, "user-1", raw_output="bad")
        assert (await machine.get_execution(execution.id, "user-1")).status == "running"
        third = await machine.record_stage_outcome(execution.id, stage_id, "user-1", raw_output="bad")

        assert [first.retry_count, second.retry_count, third.retry_count] == [0, 1, 2]
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "failed"
        assert execution.error_message == "Stage 1 failed after 3 attempt(s)"

        logs = await machine.list_execution_logs(execution.id, "user-1")
        assert len([log for log in logs if log.status == "failed"]) == 3

        with pytest.raises(ConflictError) as exc_info:
            await machine.record_stage_outcome(execution.id, stage_id, "user-1", raw_output="OK")
        assert exc_info.value.reason == "invalid_state"

    async def test_retry_stage_appends_pending_attempt(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "retry_limit": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.begin_attempt(execution.id, stages[0].id, "user-1", inputs={"a": 1}, prompt_sent="Prompt")
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", error="timeout")

        log = await machine.retry_stage(execution.id, stages[0].id, "user-1")

        assert log.status == "pending"
        assert log.retry_count == 1
        assert log.inputs == {"a": 1}
        assert log.prompt_sent == "Prompt"
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "running"
        assert execution.current_stage_order == 1

    async def test_retry_resumes_paused_execution(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [
                {"stage_order": 1, "next_stage_on_pass": 2},
                {"stage_order": 2, "validation_type": "manual", "retry_limit": 1},
            ]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="one")
        await machine.record_stage_outcome(execution.id, stages[1].id, "user-1", error="boom")
        assert (await machine.get_execution(execution.id, "user-1")).status == "running"

        await machine.update_status(execution.id, "user-1", "paused")
        log = await machine.retry_stage(execution.id, stages[1].id, "user-1")

        assert log.retry_count == 1
        assert (await machine.get_execution(execution.id, "user-1")).status == "running"

    async def test_retry_limit_reached(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "retry_limit": 0}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", error="boom")

        with pytest.raises(ConflictError) as exc_info:
            await machine.retry_stage(execution.id, stages[0].id, "user-1")
        assert exc_info.value.reason == "retry_limit_reached"
        assert exc_info.value.details == {"attempts": 1, "limit": 0}

    async def test_only_failed_attempts_can_be_retried(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [{"stage_order": 1, "validation_type": "manual", "retry_limit": 3}]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})

        with pytest.raises(NotFoundError):
            await machine.retry_stage(execution.id, stages[0].id, "user-1")

        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="draft")
        with pytest.raises(ConflictError) as exc_info:
            await machine.retry_stage(execution.id, stages[0].id, "user-1")
        assert exc_info.value.reason == "not_retryable"

    async def test_completed_execution_cannot_be_retried(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [
                {"stage_order": 1, "validation_type": "regex", "validation_criteria": "^OK",
                 "retry_limit": 2, "next_stage_on_fail": 2},
                {"stage_order": 2},
            ]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})
        for _ in range(3):
            await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="bad")
        await machine.record_stage_outcome(execution.id, stages[1].id, "user-1", raw_output="fallback")
        assert (await machine.get_execution(execution.id, "user-1")).status == "completed"

        with pytest.raises(ConflictError) as exc_info:
            await machine.retry_stage(execution.id, stages[0].id, "user-1")
        assert exc_info.value.reason == "invalid_state"


class TestManualValidation:

    async def test_two_stage_review_scenario(self, machine, make_workflow):
        workflow, stages = await make_workflow(
            [
                {"stage_order": 1, "validation_type": "none", "next_stage_on_pass": 2},
                {"stage_order": 2, "validation_type": "manual", "retry_limit": 1},
            ]
        )
        stage1, stage2 = stages

        execution = await machine.start_execution(workflow.id, "user-1", {})
        assert execution.current_stage_order == 1

        log1 = await machine.record_stage_outcome(execution.id, stage1.id, "user-1", raw_output="outline")
        assert log1.status == "completed"
        assert (await machine.get_execution(execution.id, "user-1")).current_stage_order == 2

        log2 = await machine.record_stage_outcome(execution.id, stage2.id, "user-1", raw_output="draft 1")
        assert log2.status == "awaiting_validation"
        assert (await machine.get_execution(execution.id, "user-1")).status == "running"

        log2 = await machine.record_manual_validation(execution.id, stage2.id, "user-1", False, "Too short")
        assert log2.status == "failed"
        assert log2.validation_result == "fail"
        assert log2.validation_details == "Too short"
        assert (await machine.get_execution(execution.id, "user-1")).status == "running"

        log3 = await machine.retry_stage(execution.id, stage2.id, "user-1")
        assert log3.status == "pending"
        assert log3.retry_count == 1

        log3 = await machine.record_stage_outcome(execution.id, stage2.id, "user-1", raw_output="draft 2")
        assert log3.retry_count == 1
        assert log3.status == "awaiting_validation"

        log3 = await machine.record_manual_validation(execution.id, stage2.id, "user-1", True)
        assert log3.status == "completed"

        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "completed"
        assert execution.completed_at is not None
        logs = await machine.list_execution_logs(execution.id, "user-1")
        assert [(log.stage_order, log.retry_count, log.status) for log in logs] == [
            (1, 0, "completed"),
            (2, 0, "failed"),
            (2, 1, "completed"),
        ]

    async def test_validation_succeeds_exactly_once(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "validation_type": "manual"}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="draft")

        await machine.record_manual_validation(execution.id, stages[0].id, "user-1", True)

        with pytest.raises(ConflictError) as exc_info:
            await machine.record_manual_validation(execution.id, stages[0].id, "user-1", True)
        assert exc_info.value.reason == "not_awaiting_validation"

    async def test_validation_without_attempt(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "validation_type": "manual"}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        with pytest.raises(NotFoundError):
            await machine.record_manual_validation(execution.id, stages[0].id, "user-1", True)

    async def test_pending_review_blocks_new_outcomes(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "validation_type": "manual"}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="draft")

        with pytest.raises(ConflictError) as exc_info:
            await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="another")
        assert exc_info.value.reason == "awaiting_validation"

    async def test_paused_execution_cannot_be_validated(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "validation_type": "manual"}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="draft")
        await machine.update_status(execution.id, "user-1", "paused")

        with pytest.raises(ConflictError) as exc_info:
            await machine.record_manual_validation(execution.id, stages[0].id, "user-1", True)
        assert exc_info.value.reason == "invalid_state"


class TestStatusChanges:

    async def test_pause_and_resume(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        execution = await machine.update_status(execution.id, "user-1", "paused")
        assert execution.status == "paused"
        with pytest.raises(ConflictError):
            await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="x")

        execution = await machine.update_status(execution.id, "user-1", "running")
        assert execution.status == "running"

    async def test_cancel_skips_active_attempts(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.begin_attempt(execution.id, stages[0].id, "user-1", inputs={}, prompt_sent="p")

        execution = await machine.update_status(execution.id, "user-1", "failed")

        assert execution.status == "failed"
        assert execution.completed_at is not None
        assert execution.error_message == "Execution cancelled"
        logs = await machine.list_execution_logs(execution.id, "user-1")
        assert [log.status for log in logs] == ["skipped"]

    async def test_terminal_status_cannot_change(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="x")

        with pytest.raises(ConflictError) as exc_info:
            await machine.update_status(execution.id, "user-1", "running")
        assert exc_info.value.reason == "invalid_transition"

    async def test_same_status_is_a_no_op(self, machine, make_workflow):
        workflow, _ = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        version = execution.version

        execution = await machine.update_status(execution.id, "user-1", "running")

        assert execution.status == "running"
        assert execution.version == version

    async def test_unknown_status(self, machine, make_workflow):
        workflow, _ = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        with pytest.raises(InvalidInputError) as exc_info:
            await machine.update_status(execution.id, "user-1", "exploded")
        assert exc_info.value.reason == "invalid_status"


class TestReads:

    async def test_reads_are_idempotent(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "next_stage_on_pass": 2}, {"stage_order": 2}])
        execution = await machine.start_execution(workflow.id, "user-1", {"q": 1})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="a")

        first = ExecutionResponse.model_validate(await machine.get_execution(execution.id, "user-1"))
        second = ExecutionResponse.model_validate(await machine.get_execution(execution.id, "user-1"))
        assert first == second

        logs_first = [ExecutionLogResponse.model_validate(log) for log in await machine.list_execution_logs(execution.id, "user-1")]
        logs_second = [ExecutionLogResponse.model_validate(log) for log in await machine.list_execution_logs(execution.id, "user-1")]
        assert logs_first == logs_second

    async def test_reads_are_owner_scoped(self, machine, make_workflow):
        workflow, _ = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        with pytest.raises(NotFoundError):
            await machine.get_execution(execution.id, "intruder")
        with pytest.raises(NotFoundError):
            await machine.list_execution_logs(execution.id, "intruder")
        assert await machine.list_executions("intruder") == []

    async def test_list_executions_filters(self, machine, make_workflow):
        workflow_a, stages_a = await make_workflow([{"stage_order": 1}], name="A")
        workflow_b, _ = await make_workflow([{"stage_order": 1}], name="B")
        done = await machine.start_execution(workflow_a.id, "user-1", {})
        await machine.record_stage_outcome(done.id, stages_a[0].id, "user-1", raw_output="x")
        running = await machine.start_execution(workflow_b.id, "user-1", {})

        assert [e.id for e in await machine.list_executions("user-1", status="completed")] == [done.id]
        assert [e.id for e in await machine.list_executions("user-1", workflow_id=workflow_b.id)] == [running.id]
        assert len(await machine.list_executions("user-1")) == 2

    async def test_logs_filtered_by_stage(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1, "next_stage_on_pass": 2}, {"stage_order": 2}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="a")
        await machine.record_stage_outcome(execution.id, stages[1].id, "user-1", raw_output="b")

        logs = await machine.list_execution_logs(execution.id, "user-1", stage_id=stages[1].id)

        assert [log.stage_order for log in logs] == [2]

    async def test_delete_execution(self, machine, make_workflow):
        workflow, stages = await make_workflow([{"stage_order": 1}])
        execution = await machine.start_execution(workflow.id, "user-1", {})
        await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="a")

        with pytest.raises(NotFoundError):
            await machine.delete_execution(execution.id, "intruder")
        await machine.delete_execution(execution.id, "user-1")

        with pytest.raises(NotFoundError):
            await machine.get_execution(execution.id, "user-1")


class TestConcurrentTransitions:

    async def test_interleaved_outcomes_serialize(self, machine, make_workflow, session_factory):
        workflow, stages = await make_workflow([{"stage_order": 1, "prompt_template": "Go"}])
        execution = await machine.start_execution(workflow.id, "user-1", {})

        async def report(raw_output):
            async with session_factory() as session:
                try:
                    log = await ExecutionStateMachine(session).record_stage_outcome(
                        execution.id, stages[0].id, "user-1", raw_output=raw_output
                    )
                    return "ok", log.status
                except ConflictError as e:
                    return "conflict", e.reason

        results = await asyncio.gather(report("first"), report("second"))

        assert sorted(results) == [("conflict", "concurrent_modification"), ("ok", "completed")]
        async with session_factory() as session:
            logs = await ExecutionStateMachine(session).list_execution_logs(execution.id, "user-1")
            current = await ExecutionStateMachine(session).get_execution(execution.id, "user-1")
        assert len(logs) == 1
        assert current.status == "completed"

    async def test_stale_copy_is_rejected(self, machine, make_workflow, session_factory):
        workflow, stages = await make_workflow(
            [{"stage_order": 1, "prompt_template": "Go", "next_stage_on_pass": 2}, {"stage_order": 2, "prompt_template": "Next"}]
        )
        execution = await machine.start_execution(workflow.id, "user-1", {})

        async with session_factory() as other:
            stale = await other.get(Execution, execution.id)
            await machine.record_stage_outcome(execution.id, stages[0].id, "user-1", raw_output="done")

            with pytest.raises(ConflictError) as exc_info:
                async with ExecutionStateMachine(other)._transaction():
                    stale.status = "paused"

        assert exc_info.value.reason == "concurrent_modification"
        execution = await machine.get_execution(execution.id, "user-1")
        assert execution.status == "running"
        assert execution.current_stage_order == 2
