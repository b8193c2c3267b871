"""Tests for engine/workflow_engine.py.

Covers every action of the state machine, the refusal results returned
instead of exceptions, and the end-to-end bugfix scenario against the
file-backed store.
"""

import asyncio
from pathlib import Path

import pytest

from harness_workflow.engine.memory_store import InMemoryWorkflowStore
from harness_workflow.engine.persistence import FileWorkflowStore
from harness_workflow.engine.workflow_engine import WorkflowEngine, resolve_next_action
from harness_workflow.enums import (
    GuardLevel,
    NextActionType,
    StepStatus,
    TransitionErrorCode,
    WorkflowEventType,
    WorkflowStatus,
)
from harness_workflow.models.domain import EngineConfig, WorkflowInstance


class RacingStore(InMemoryWorkflowStore):
    """Store where another writer saves right after every instance load."""

    racing = False

    async def load_instance(self, workflow_id):
        instance = await super().load_instance(workflow_id)
        if self.racing and instance is not None:
            self.instances[workflow_id].revision += 1
        return instance


async def _event_types(engine: WorkflowEngine, workflow_id: str | None = None) -> list[WorkflowEventType]:
    return [event.type for event in await engine.history(workflow_id)]


class TestStart:
    @pytest.mark.asyncio
    async def test_start_bugfix(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        result = await engine.start("bugfix", {"description": "Login fails on SSO"})

        assert result.success is True
        instance = result.instance
        assert instance.status == WorkflowStatus.RUNNING
        assert instance.current_step == 1
        assert instance.total_steps == 6
        assert instance.steps[0].status == StepStatus.RUNNING
        assert instance.steps[0].started_at
        assert all(step.status == StepStatus.PENDING for step in instance.steps[1:])
        assert instance.context.description == "Login fails on SSO"
        assert await memory_store.load_active_id() == instance.id
        assert [event.type for event in result.events] == [WorkflowEventType.START]
        assert result.allowed_actions == ["advance", "fail", "abort"]

    @pytest.mark.asyncio
    async def test_start_then_status(self, engine: WorkflowEngine):
        started = await engine.start("bugfix")

        instance = await engine.status()

        assert instance.id == started.instance.id
        assert instance.current_step == 1
        assert instance.total_steps == 6
        assert instance.status == WorkflowStatus.RUNNING

    @pytest.mark.asyncio
    async def test_checkpoint_on_first_step_waits(self, engine: WorkflowEngine):
        result = await engine.start("feature")

        assert result.instance.status == WorkflowStatus.WAITING_CHECKPOINT
        assert result.instance.steps[0].status == StepStatus.WAITING_CHECKPOINT
        assert result.next_action.type == NextActionType.AWAIT_CHECKPOINT
        assert result.next_action.checkpoint == "Requirements confirmed"

    @pytest.mark.asyncio
    async def test_next_action_names_skill(self, engine: WorkflowEngine):
        result = await engine.start("bugfix")

        assert result.next_action.type == NextActionType.RUN_EXTERNAL_SKILL
        assert result.next_action.agent == "explore"
        assert result.next_action.skill == "/oh-my-claudecode:deepsearch"
        assert result.next_action.dispatch_hint is None

    @pytest.mark.asyncio
    async def test_refuses_second_active_workflow(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        first = await engine.start("bugfix")

        second = await engine.start("feature")

        assert second.success is False
        assert second.error_code == TransitionErrorCode.ACTIVE_WORKFLOW_EXISTS
        assert second.instance.id == first.instance.id
        assert list(memory_store.instances) == [first.instance.id]
        assert await memory_store.load_active_id() == first.instance.id

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_instance(self, engine: WorkflowEngine):
        results = await asyncio.gather(engine.start("bugfix"), engine.start("refactor"))

        assert sorted(result.success for result in results) == [False, True]
        refused = next(result for result in results if not result.success)
        assert refused.error_code == TransitionErrorCode.ACTIVE_WORKFLOW_EXISTS

    @pytest.mark.asyncio
    async def test_stale_pointer_is_replaced(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        await memory_store.save_active_pointer("bugfix-20240101-gone")

        result = await engine.start("refactor")

        assert result.success is True
        assert await memory_store.load_active_id() == result.instance.id

    @pytest.mark.asyncio
    async def test_start_after_finished_workflow(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.abort("wrong type")

        result = await engine.start("refactor")

        assert result.success is True
        assert result.instance.workflow_type == "refactor"

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        result = await engine.start("deploy")

        assert result.success is False
        assert result.error_code == TransitionErrorCode.UNKNOWN_WORKFLOW
        assert "feature" in result.message
        assert await memory_store.load_active_id() is None

    @pytest.mark.asyncio
    async def test_numeric_related_issue_is_kept_as_text(self, engine: WorkflowEngine):
        result = await engine.start("bugfix", {"relatedIssue": 42, "description": "Login fails on SSO"})

        assert result.success is True
        assert result.instance.context.related_issue == "42"

    @pytest.mark.asyncio
    async def test_malformed_context_is_refused(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        result = await engine.start("bugfix", {"branch": ["fix/sso", "fix/login"]})

        assert result.success is False
        assert result.error_code == TransitionErrorCode.INVALID_INPUT
        assert "branch" in result.message
        assert result.allowed_actions == ["start"]
        assert await memory_store.load_active_id() is None

    @pytest.mark.asyncio
    async def test_malformed_override_is_refused(self, engine: WorkflowEngine):
        result = await engine.start("bugfix", overrides={"guard_level": "strict"})

        assert result.success is False
        assert result.error_code == TransitionErrorCode.INVALID_INPUT
        assert result.message.startswith("Invalid context or configuration for bugfix")

    @pytest.mark.asyncio
    async def test_config_overrides_and_team_mode(self, memory_store: InMemoryWorkflowStore):
        engine = WorkflowEngine(memory_store, defaults=EngineConfig(max_retries=5))

        result = await engine.start("feature", overrides={"guard_level": "block", "auto_dispatch": None})

        config = result.instance.config
        assert config.guard_level == GuardLevel.BLOCK
        assert config.max_retries == 5
        assert config.auto_dispatch is False
        assert config.team_mode == "ralph"

    @pytest.mark.asyncio
    async def test_explicit_team_mode_wins(self, engine: WorkflowEngine):
        result = await engine.start("feature", overrides={"team_mode": "autopilot"})
        assert result.instance.config.team_mode == "autopilot"

    @pytest.mark.asyncio
    async def test_auto_dispatch_attaches_hint(self, engine: WorkflowEngine):
        result = await engine.start(
            "bugfix", {"description": "Login fails", "branch": "fix/login"}, overrides={"auto_dispatch": True}
        )

        hint = result.next_action.dispatch_hint
        assert hint.agent_type == "oh-my-claudecode:explore"
        assert hint.model == "haiku"
        assert "Task: Login fails" in hint.prompt
        assert "Branch: fix/login" in hint.prompt


class TestAdvance:
    @pytest.mark.asyncio
    async def test_advance_into_checkpoint(self, engine: WorkflowEngine):
        await engine.start("bugfix")

        result = await engine.advance(result="Found the session handler", artifacts={"files": ["auth.py"]})

        instance = result.instance
        assert result.success is True
        assert instance.current_step == 2
        assert instance.status == WorkflowStatus.WAITING_CHECKPOINT
        assert instance.steps[0].status == StepStatus.COMPLETED
        assert instance.steps[0].result == "Found the session handler"
        assert instance.steps[0].artifacts == {"files": ["auth.py"]}
        assert instance.steps[0].completed_at
        assert instance.steps[1].status == StepStatus.WAITING_CHECKPOINT
        event = result.events[0]
        assert event.type == WorkflowEventType.ADVANCE
        assert event.data["fromStep"] == 1
        assert event.data["toStep"] == 2
        assert "Awaiting checkpoint: Root cause confirmed" in result.message

    @pytest.mark.asyncio
    async def test_advance_while_waiting_is_refused(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.advance()

        result = await engine.advance()

        assert result.success is False
        assert result.error_code == TransitionErrorCode.INVALID_STATUS
        assert result.allowed_actions == ["approve", "reject", "abort"]
        assert result.instance.current_step == 2

    @pytest.mark.asyncio
    async def test_no_active_workflow(self, engine: WorkflowEngine):
        result = await engine.advance()

        assert result.success is False
        assert result.error_code == TransitionErrorCode.NO_ACTIVE_WORKFLOW
        assert result.allowed_actions == ["start"]
        assert result.instance is None

    @pytest.mark.asyncio
    async def test_pointer_to_missing_instance(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        await memory_store.save_active_pointer("bugfix-20240101-gone")

        result = await engine.advance()

        assert result.error_code == TransitionErrorCode.INSTANCE_NOT_FOUND


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_approve_moves_on(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.advance()

        result = await engine.approve(approver="lead")

        instance = result.instance
        assert result.success is True
        assert instance.steps[1].status == StepStatus.COMPLETED
        assert instance.steps[1].checkpoint_approved is True
        assert instance.current_step == 3
        assert instance.status == WorkflowStatus.RUNNING
        assert [event.type for event in result.events] == [
            WorkflowEventType.CHECKPOINT_APPROVED,
            WorkflowEventType.COMPLETE_STEP,
        ]
        assert result.events[0].data["approver"] == "lead"

    @pytest.mark.asyncio
    async def test_approve_without_checkpoint(self, engine: WorkflowEngine):
        await engine.start("bugfix")

        result = await engine.approve()

        assert result.success is False
        assert result.error_code == TransitionErrorCode.NO_CHECKPOINT
        assert result.instance.status == WorkflowStatus.RUNNING

    @pytest.mark.asyncio
    async def test_reject_without_checkpoint(self, engine: WorkflowEngine):
        await engine.start("bugfix")

        result = await engine.reject("nope")

        assert result.error_code == TransitionErrorCode.NO_CHECKPOINT

    @pytest.mark.asyncio
    async def test_reject_fails_step(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        await engine.start("bugfix")
        await engine.advance()

        result = await engine.reject("cause unclear")

        instance = result.instance
        assert instance.status == WorkflowStatus.FAILED_STEP
        assert instance.steps[1].status == StepStatus.FAILED
        assert instance.steps[1].error == "cause unclear"
        assert instance.steps[1].checkpoint_approved is False
        assert result.allowed_actions == ["retry", "skip", "abort"]
        assert await memory_store.load_active_id() == instance.id

    @pytest.mark.asyncio
    async def test_retried_checkpoint_is_resubmitted(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.advance()
        await engine.reject("cause unclear")

        retried = await engine.retry()
        assert retried.instance.steps[1].status == StepStatus.RUNNING
        assert retried.instance.steps[1].checkpoint_approved is None
        assert retried.instance.steps[1].error is None

        result = await engine.advance(result="Second analysis")

        instance = result.instance
        assert instance.current_step == 2
        assert instance.status == WorkflowStatus.WAITING_CHECKPOINT
        assert instance.steps[1].status == StepStatus.WAITING_CHECKPOINT
        assert result.events[0].data["resubmitted"] is True

    @pytest.mark.asyncio
    async def test_approve_while_running_checkpoint_step(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.advance()
        await engine.reject()
        await engine.retry()

        result = await engine.approve()

        assert result.error_code == TransitionErrorCode.INVALID_STATUS
        assert "advance" in result.allowed_actions


class TestSkipFailAbort:
    @pytest.mark.asyncio
    async def test_required_step_cannot_be_skipped(self, engine: WorkflowEngine):
        await engine.start("bugfix")

        result = await engine.skip("not needed")

        assert result.success is False
        assert result.error_code == TransitionErrorCode.NOT_OPTIONAL

    @pytest.mark.asyncio
    async def test_skip_optional_step(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.advance()
        await engine.approve()
        await engine.advance()

        result = await engine.skip("trivial fix")

        instance = result.instance
        assert instance.steps[3].status == StepStatus.SKIPPED
        assert instance.steps[3].result == "Skipped: trivial fix"
        assert instance.current_step == 5
        assert instance.status == WorkflowStatus.RUNNING
        assert [event.type for event in result.events] == [WorkflowEventType.SKIP, WorkflowEventType.COMPLETE_STEP]

    @pytest.mark.asyncio
    async def test_skip_failed_step(self, engine: WorkflowEngine):
        await engine.start("bugfix")
        await engine.fail("search timed out")

        result = await engine.skip()

        assert result.instance.steps[0].status == StepStatus.SKIPPED
        assert result.instance.current_step == 2

    @pytest.mark.asyncio
    async def test_fail(self, engine: WorkflowEngine):
        await engine.start("bugfix")

        result = await engine.fail("tests crashed")

        assert result.instance.status == WorkflowStatus.FAILED_STEP
        assert result.instance.steps[0].status == StepStatus.FAILED
        assert result.instance.steps[0].error == "tests crashed"
        assert result.events[0].type == WorkflowEventType.STEP_FAILED
        assert result.next_action.type == NextActionType.RECOVER_STEP

    @pytest.mark.asyncio
    async def test_fail_while_waiting(self, engine: WorkflowEngine):
        await engine.start("feature")

        result = await engine.fail("boom")

        assert result.error_code == TransitionErrorCode.INVALID_STATUS

    @pytest.mark.asyncio
    async def test_abort(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        await engine.start("feature")

        result = await engine.abort("requirements changed")

        instance = result.instance
        assert instance.status == WorkflowStatus.ABORTED
        assert instance.steps[0].status == StepStatus.FAILED
        assert instance.steps[0].error == "requirements changed"
        assert result.next_action.type == NextActionType.WORKFLOW_ABORTED
        assert result.allowed_actions == []
        assert await memory_store.load_active_id() is None

    @pytest.mark.asyncio
    async def test_abort_without_active_workflow(self, engine: WorkflowEngine):
        result = await engine.abort()
        assert result.error_code == TransitionErrorCode.NO_ACTIVE_WORKFLOW


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_requires_failed_step(self, engine: WorkflowEngine):
        await engine.start("bugfix")

        result = await engine.retry()

        assert result.error_code == TransitionErrorCode.INVALID_STATUS
        assert result.allowed_actions == ["advance", "fail", "abort"]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore):
        await engine.start("bugfix", overrides={"max_retries": 2})

        for attempt in (1, 2):
            await engine.fail("flaky")
            result = await engine.retry()
            assert result.instance.status == WorkflowStatus.RUNNING
            assert result.instance.steps[0].retry_count == attempt

        await engine.fail("flaky")
        result = await engine.retry()

        assert result.success is True
        assert result.retries_exhausted is True
        assert result.instance.status == WorkflowStatus.ABORTED
        assert result.instance.current_step == 1
        assert result.events[0].type == WorkflowEventType.ABORT
        assert result.events[0].data["reason"] == "retries_exhausted"
        assert await memory_store.load_active_id() is None


class TestTerminalInstances:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["advance", "approve", "reject", "retry", "skip"])
    async def test_finished_workflow_is_immutable(
        self, engine: WorkflowEngine, memory_store: InMemoryWorkflowStore, action: str
    ):
        started = await engine.start("bugfix")
        await engine.abort()
        # Pointer left behind by an interrupted invocation
        await memory_store.save_active_pointer(started.instance.id)
        before = await memory_store.load_instance(started.instance.id)

        result = await getattr(engine, action)()

        after = await memory_store.load_instance(started.instance.id)
        assert result.success is False
        assert result.error_code == TransitionErrorCode.WORKFLOW_FINISHED
        assert result.allowed_actions == []
        assert after.status == before.status == WorkflowStatus.ABORTED
        assert after.current_step == before.current_step
        assert after.revision == before.revision

    @pytest.mark.asyncio
    async def test_finished_workflow_without_pointer(self, engine: WorkflowEngine):
        started = await engine.start("bugfix")
        await engine.abort()

        result = await engine.advance()

        assert result.error_code == TransitionErrorCode.NO_ACTIVE_WORKFLOW
        assert (await engine.status(started.instance.id)).status == WorkflowStatus.ABORTED


class TestConcurrentModification:
    @pytest.mark.asyncio
    async def test_stale_write_is_refused(self):
        store = RacingStore()
        engine = WorkflowEngine(store)
        started = await engine.start("bugfix")
        store.racing = True

        result = await engine.advance()

        assert result.success is False
        assert result.error_code == TransitionErrorCode.CONCURRENT_MODIFICATION
        stored = store.instances[started.instance.id]
        assert stored.current_step == 1
        assert len(store.histories[started.instance.id].events) == 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_of_unknown_id(self, engine: WorkflowEngine):
        assert await engine.status("bugfix-20240101-none") is None
        assert await engine.status() is None

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, engine: WorkflowEngine):
        first = await engine.start("bugfix")
        await engine.abort()
        second = await engine.start("refactor")

        instances = await engine.list_recent(10)

        assert [instance.id for instance in instances] == [second.instance.id, first.instance.id]
        assert [instance.id for instance in await engine.list_recent(1)] == [second.instance.id]

    @pytest.mark.asyncio
    async def test_history_by_id_after_finish(self, engine: WorkflowEngine):
        started = await engine.start("bugfix")
        await engine.abort("no longer needed")

        assert await _event_types(engine) == []
        assert await _event_types(engine, started.instance.id) == [WorkflowEventType.START, WorkflowEventType.ABORT]

    @pytest.mark.asyncio
    async def test_history_disabled(self, engine: WorkflowEngine):
        started = await engine.start("bugfix", overrides={"history_enabled": False})
        await engine.advance()

        assert await engine.history(started.instance.id) == []

    @pytest.mark.asyncio
    async def test_active_pointer(self, engine: WorkflowEngine):
        started = await engine.start("bugfix")

        pointer = await engine.active_pointer()

        assert pointer.active_workflow_id == started.instance.id
        assert pointer.started_at

    def test_describe(self, engine: WorkflowEngine):
        assert "debugger: Analyze root cause" in engine.describe("bugfix")
        assert engine.describe("deploy") is None


class TestResolveNextAction:
    def test_manual_step(self, sample_instance: WorkflowInstance):
        sample_instance.current_step = 6
        sample_instance.steps[5].status = StepStatus.RUNNING
        sample_instance.steps[5].checkpoint_approved = True

        action = resolve_next_action(sample_instance)

        assert action.type == NextActionType.MANUAL_ACTION
        assert action.agent == "verifier"
        assert action.skill is None

    def test_completed(self, sample_instance: WorkflowInstance):
        sample_instance.status = WorkflowStatus.COMPLETED
        assert resolve_next_action(sample_instance).type == NextActionType.WORKFLOW_COMPLETE


class TestFileBackedScenario:
    @pytest.mark.asyncio
    async def test_bugfix_end_to_end(self, file_engine: WorkflowEngine, file_store: FileWorkflowStore):
        """Walk the bugfix pipeline with one rejected checkpoint.

        After reject and retry, advance resubmits the debugger step for review
        instead of completing it, so the rejected step needs a second approval.
        The history therefore holds twelve events rather than the seven of a
        run where advance completes a retried checkpoint step directly.
        """
        started = await file_engine.start("bugfix", {"description": "Login fails on SSO"})
        workflow_id = started.instance.id

        advanced = await file_engine.advance(result="Reproduced")
        assert advanced.instance.status == WorkflowStatus.WAITING_CHECKPOINT

        rejected = await file_engine.reject("cause unclear")
        assert rejected.instance.status == WorkflowStatus.FAILED_STEP
        assert rejected.instance.steps[1].status == StepStatus.FAILED

        retried = await file_engine.retry()
        assert retried.instance.status == WorkflowStatus.RUNNING
        assert retried.instance.steps[1].status == StepStatus.RUNNING

        resubmitted = await file_engine.advance(result="Race in token refresh")
        assert resubmitted.instance.status == WorkflowStatus.WAITING_CHECKPOINT

        approved = await file_engine.approve()
        assert approved.instance.current_step == 3

        for expected_step in (4, 5, 6):
            result = await file_engine.advance()
            assert result.instance.current_step == expected_step
        assert result.instance.status == WorkflowStatus.WAITING_CHECKPOINT

        finished = await file_engine.approve()

        assert finished.instance.status == WorkflowStatus.COMPLETED
        assert finished.next_action.type == NextActionType.WORKFLOW_COMPLETE
        assert await file_store.load_active_id() is None
        assert await _event_types(file_engine, workflow_id) == [
            WorkflowEventType.START,
            WorkflowEventType.ADVANCE,
            WorkflowEventType.CHECKPOINT_REJECTED,
            WorkflowEventType.RETRY,
            WorkflowEventType.ADVANCE,
            WorkflowEventType.CHECKPOINT_APPROVED,
            WorkflowEventType.COMPLETE_STEP,
            WorkflowEventType.ADVANCE,
            WorkflowEventType.ADVANCE,
            WorkflowEventType.ADVANCE,
            WorkflowEventType.CHECKPOINT_APPROVED,
            WorkflowEventType.COMPLETE,
        ]

        stored = await file_store.load_instance(workflow_id)
        assert stored == finished.instance
        assert all(step.status == StepStatus.COMPLETED for step in stored.steps)
        assert stored.steps[1].retry_count == 1

    @pytest.mark.asyncio
    async def test_reads_do_not_change_files(self, file_engine: WorkflowEngine, file_store: FileWorkflowStore):
        started = await file_engine.start("bugfix")
        await file_engine.advance()

        def snapshot(root: Path) -> dict[str, bytes]:
            return {str(path): path.read_bytes() for path in sorted(root.rglob("*")) if path.is_file()}

        before = snapshot(file_store.workflows_dir)
        for _ in range(3):
            await file_engine.status()
            await file_engine.status(started.instance.id)
            await file_engine.list_recent()
            await file_engine.history()
            await file_engine.active_pointer()

        assert snapshot(file_store.workflows_dir) == before

    @pytest.mark.asyncio
    async def test_undecodable_state_is_refused(self, file_engine: WorkflowEngine, file_store: FileWorkflowStore):
        started = await file_engine.start("bugfix")
        (file_store.workflows_dir / started.instance.id / "state.json").write_bytes(b'{"id": "\xff\xfe"}')

        result = await file_engine.advance()

        assert result.success is False
        assert result.error_code == TransitionErrorCode.INSTANCE_NOT_FOUND
        assert await file_engine.status() is None

        (file_store.workflows_dir / "active.json").write_bytes(b"\xff\xfe\x00")

        assert (await file_engine.advance()).error_code == TransitionErrorCode.NO_ACTIVE_WORKFLOW
        assert (await file_engine.start("refactor")).success is True
