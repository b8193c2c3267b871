"""
Workflow engine: the durable state machine behind every workflow action.

The engine turns one action (start, advance, approve, reject, retry, skip,
fail, abort) into a state change on the active ``WorkflowInstance``. Each
call is a complete read-compute-write cycle against the injected
``WorkflowStore``; the engine keeps no state of its own between calls, which
is what lets short-lived command invocations drive a long-running workflow.

Action Lifecycle:
    1. Load the active pointer and the instance it names
    2. Refuse the action if the current status does not permit it
    3. Mutate the instance in memory and collect the events it produced
    4. Save the instance (revision-checked), append the events, then update
       the active pointer when the workflow started or finished

Result Contract:
    Every action returns an ``EngineResult``. Refusals are ordinary results
    with an ``error_code`` and the list of actions that would be accepted,
    never exceptions. Only write failures (``PersistenceError``) escape.

Checkpoints:
    A step with a checkpoint is entered in ``waiting_checkpoint`` and only
    completes through ``approve``. If its checkpoint is rejected and the step
    retried, ``advance`` hands it back for review instead of completing it.

Example:
    >>> engine = WorkflowEngine(FileWorkflowStore(root))
    >>> result = await engine.start("bugfix", {"description": "Login fails on SSO"})
    >>> result = await engine.advance(result="Found the session handler")
    >>> result.instance.status
    <WorkflowStatus.WAITING_CHECKPOINT: 'waiting_checkpoint'>
"""

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from harness_workflow.catalog import WORKFLOW_DEFINITIONS, describe_workflow
from harness_workflow.engine.persistence import WorkflowStore, generate_workflow_id
from harness_workflow.engine.transitions import allowed_actions
from harness_workflow.enums import (
    NextActionType,
    StepStatus,
    TransitionErrorCode,
    WorkflowEventType,
    WorkflowStatus,
)
from harness_workflow.exceptions import StaleInstanceError
from harness_workflow.external.mapper import build_dispatch_hint, resolve_external_action
from harness_workflow.models.domain import (
    ActivePointer,
    EngineConfig,
    StepState,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowInstance,
    utc_now,
)
from harness_workflow.models.results import EngineResult, NextAction

log = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 10


def _first_error(error: ValidationError) -> str:
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail["loc"]) or "value"
    return f"{location}: {detail['msg']}"


def resolve_next_action(instance: WorkflowInstance) -> NextAction:
    """Decide what the actor should do next for an instance.

    Args:
        instance: Instance in any status.

    Returns:
        Guidance keyed by ``NextActionType``. Running steps resolve to an
        external skill when one is known, otherwise to a manual delegation.
    """
    if instance.status is WorkflowStatus.COMPLETED:
        return NextAction(type=NextActionType.WORKFLOW_COMPLETE, action="Workflow completed.")
    if instance.status is WorkflowStatus.ABORTED:
        return NextAction(type=NextActionType.WORKFLOW_ABORTED, action="Workflow aborted.")

    step = instance.current
    if instance.status is WorkflowStatus.WAITING_CHECKPOINT:
        return NextAction(
            type=NextActionType.AWAIT_CHECKPOINT,
            agent=step.agent,
            action=step.action,
            checkpoint=step.checkpoint,
        )
    if instance.status is WorkflowStatus.FAILED_STEP:
        return NextAction(type=NextActionType.RECOVER_STEP, agent=step.agent, action=step.action)

    external = resolve_external_action(step)
    dispatch = build_dispatch_hint(step, instance.context) if instance.config.auto_dispatch else None
    return NextAction(
        type=NextActionType.MANUAL_ACTION if external.is_manual else NextActionType.RUN_EXTERNAL_SKILL,
        agent=step.agent,
        action=step.action,
        skill=external.skill,
        checkpoint=step.checkpoint,
        dispatch_hint=dispatch,
    )


class WorkflowEngine:
    """Apply workflow actions to persisted instances.

    Attributes:
        store: Backend holding instances, histories and the active pointer.
        defaults: Engine configuration new instances start from.
        catalog: Workflow definitions available to ``start``.
    """

    def __init__(
        self,
        store: WorkflowStore,
        defaults: EngineConfig | None = None,
        catalog: Mapping[str, WorkflowDefinition] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Persistence backend; tests may pass an in-memory store.
            defaults: Base engine configuration for new instances.
            catalog: Definitions by name; the built-in catalog when omitted.
        """
        self.store = store
        self.defaults = defaults or EngineConfig()
        self.catalog = catalog if catalog is not None else WORKFLOW_DEFINITIONS
        # Serializes mutating actions issued from the same process
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refuse(
        self,
        action: str,
        code: TransitionErrorCode,
        message: str,
        instance: WorkflowInstance | None = None,
        allowed: list[str] | None = None,
    ) -> EngineResult:
        if allowed is None:
            allowed = allowed_actions(instance.status, instance.current) if instance else ["start"]
        log.info(
            "transition_rejected",
            action=action,
            code=code.value,
            workflow_id=instance.id if instance else None,
            status=instance.status.value if instance else None,
        )
        return EngineResult(
            success=False,
            action=action,
            message=message,
            instance=instance,
            next_action=resolve_next_action(instance) if instance else None,
            error_code=code,
            allowed_actions=allowed,
        )

    async def _load_active(self, action: str) -> WorkflowInstance | EngineResult:
        """Load the active, non-terminal instance or a refusal explaining why not."""
        active_id = await self.store.load_active_id()
        if not active_id:
            return self._refuse(action, TransitionErrorCode.NO_ACTIVE_WORKFLOW, "No active workflow.")

        instance = await self.store.load_instance(active_id)
        if instance is None:
            return self._refuse(
                action,
                TransitionErrorCode.INSTANCE_NOT_FOUND,
                f"Active workflow {active_id} has no readable state; start a new workflow.",
            )
        if instance.is_terminal:
            return self._refuse(
                action,
                TransitionErrorCode.WORKFLOW_FINISHED,
                f"Workflow {instance.id} is already {instance.status.value}.",
                instance,
            )
        return instance

    def _invalid_status(self, action: str, instance: WorkflowInstance) -> EngineResult:
        allowed = allowed_actions(instance.status, instance.current)
        return self._refuse(
            action,
            TransitionErrorCode.INVALID_STATUS,
            f"Cannot {action} while workflow is {instance.status.value}. Allowed: {', '.join(allowed) or 'none'}.",
            instance,
            allowed,
        )

    @staticmethod
    def _enter_step(instance: WorkflowInstance, order: int, now: str) -> StepState:
        """Make step ``order`` current, gating it if it carries a checkpoint."""
        instance.current_step = order
        step = instance.current
        step.started_at = now
        if step.checkpoint_pending:
            step.status = StepStatus.WAITING_CHECKPOINT
            instance.status = WorkflowStatus.WAITING_CHECKPOINT
        else:
            step.status = StepStatus.RUNNING
            instance.status = WorkflowStatus.RUNNING
        return step

    def _move_on(
        self,
        instance: WorkflowInstance,
        now: str,
        closing: WorkflowEventType,
        data: dict[str, Any],
    ) -> WorkflowEvent:
        """Leave the closed current step: enter the next one or finish.

        Returns:
            ``closing`` event when another step follows, ``complete`` when
            the closed step was the last one.
        """
        closed = instance.current
        following = instance.next_step
        if following is None:
            instance.status = WorkflowStatus.COMPLETED
            return WorkflowEvent(
                type=WorkflowEventType.COMPLETE,
                timestamp=now,
                data={**data, "stepOrder": closed.order, "totalSteps": instance.total_steps},
            )

        self._enter_step(instance, following.order, now)
        return WorkflowEvent(
            type=closing,
            timestamp=now,
            data={**data, "fromStep": closed.order, "toStep": following.order},
        )

    async def _commit(
        self,
        action: str,
        instance: WorkflowInstance,
        events: list[WorkflowEvent],
        message: str,
        *,
        created: bool = False,
        retries_exhausted: bool = False,
    ) -> EngineResult:
        """Persist a mutated instance and build the success result."""
        instance.updated_at = events[-1].timestamp if events else utc_now()
        try:
            await self.store.save_instance(instance, check_revision=not created)
        except StaleInstanceError as e:
            log.warning("concurrent_modification", workflow_id=instance.id, error=e.message)
            return self._refuse(
                action,
                TransitionErrorCode.CONCURRENT_MODIFICATION,
                f"{e.message}. Reload the status and try again.",
                allowed=["status"],
            )

        if instance.config.history_enabled:
            await self.store.append_events(instance.id, events)

        if created:
            await self.store.save_active_pointer(instance.id)
        elif instance.is_terminal:
            await self.store.clear_active_pointer()

        log.info(
            "workflow_transition",
            action=action,
            workflow_id=instance.id,
            status=instance.status.value,
            step=instance.current_step,
        )
        return EngineResult(
            success=True,
            action=action,
            message=message,
            instance=instance,
            next_action=resolve_next_action(instance),
            allowed_actions=allowed_actions(instance.status, instance.current),
            events=events,
            retries_exhausted=retries_exhausted,
        )

    def _progress_message(self, instance: WorkflowInstance, prefix: str) -> str:
        if instance.status is WorkflowStatus.COMPLETED:
            return f"{prefix} Workflow completed: {instance.workflow_type} ({instance.id})."
        step = instance.current
        message = f"{prefix} Next step {step.order}/{instance.total_steps}: {step.agent} - {step.action}."
        if instance.status is WorkflowStatus.WAITING_CHECKPOINT:
            message += f" Awaiting checkpoint: {step.checkpoint}."
        return message

    # ------------------------------------------------------------------
    # Mutating actions
    # ------------------------------------------------------------------

    async def start(
        self,
        workflow_type: str,
        context: WorkflowContext | Mapping[str, Any] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> EngineResult:
        """Create a new instance and make it the active workflow.

        Args:
            workflow_type: Catalog name, e.g. ``"feature"``.
            context: Caller metadata (description, branch, related issue, ...).
            overrides: Engine config values that win over ``defaults``.

        Returns:
            Success with the new instance, or a refusal when another workflow
            is active (the existing instance is returned) or the type is unknown.
        """
        async with self._lock:
            active_id = await self.store.load_active_id()
            if active_id:
                existing = await self.store.load_instance(active_id)
                if existing is not None and not existing.is_terminal:
                    return self._refuse(
                        "start",
                        TransitionErrorCode.ACTIVE_WORKFLOW_EXISTS,
                        f"Workflow {existing.id} ({existing.workflow_type}) is already active "
                        f"with status {existing.status.value}.",
                        existing,
                    )
                log.warning("stale_active_pointer", workflow_id=active_id)

            definition = self.catalog.get(workflow_type)
            if definition is None:
                return self._refuse(
                    "start",
                    TransitionErrorCode.UNKNOWN_WORKFLOW,
                    f"Unknown workflow type: {workflow_type}. Available: {', '.join(self.catalog)}.",
                )

            config_values = self.defaults.model_dump()
            if definition.team_mode and config_values.get("team_mode") is None:
                config_values["team_mode"] = definition.team_mode
            config_values.update({k: v for k, v in (overrides or {}).items() if v is not None})
            try:
                config = EngineConfig.model_validate(config_values)
                if isinstance(context, WorkflowContext):
                    workflow_context = context
                else:
                    workflow_context = WorkflowContext.model_validate(dict(context or {}))
            except ValidationError as e:
                return self._refuse(
                    "start",
                    TransitionErrorCode.INVALID_INPUT,
                    f"Invalid context or configuration for {workflow_type}: {_first_error(e)}",
                )

            workflow_id = generate_workflow_id(workflow_type)
            while await self.store.load_instance(workflow_id) is not None:
                workflow_id = generate_workflow_id(workflow_type)

            now = utc_now()
            steps = [StepState.from_pipeline_step(step) for step in definition.pipeline]
            instance = WorkflowInstance(
                id=workflow_id,
                workflow_type=workflow_type,
                status=WorkflowStatus.RUNNING,
                current_step=1,
                total_steps=len(steps),
                context=workflow_context,
                steps=steps,
                config=config,
                created_at=now,
                updated_at=now,
            )
            self._enter_step(instance, 1, now)

            event = WorkflowEvent(
                type=WorkflowEventType.START,
                timestamp=now,
                data={"workflowType": workflow_type, "context": workflow_context.to_document()},
            )
            log.info("workflow_started", workflow_id=workflow_id, workflow_type=workflow_type)
            return await self._commit(
                "start",
                instance,
                [event],
                self._progress_message(instance, f"Started {workflow_type} ({workflow_id})."),
                created=True,
            )

    async def advance(self, result: str | None = None, artifacts: Mapping[str, Any] | None = None) -> EngineResult:
        """Complete the running step and move to the next one.

        A running step whose checkpoint has not been approved (after a
        reject and retry) is not completed; it is handed back for review.

        Args:
            result: Short summary of what the step produced.
            artifacts: Free-form outputs to keep with the step.
        """
        async with self._lock:
            loaded = await self._load_active("advance")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            if instance.status is not WorkflowStatus.RUNNING:
                return self._invalid_status("advance", instance)

            now = utc_now()
            step = instance.current
            if result:
                step.result = result
            if artifacts:
                step.artifacts = dict(artifacts)

            if step.checkpoint_pending:
                step.status = StepStatus.WAITING_CHECKPOINT
                instance.status = WorkflowStatus.WAITING_CHECKPOINT
                event = WorkflowEvent(
                    type=WorkflowEventType.ADVANCE,
                    timestamp=now,
                    data={"stepOrder": step.order, "checkpoint": step.checkpoint, "resubmitted": True},
                )
                return await self._commit(
                    "advance",
                    instance,
                    [event],
                    f"Step {step.order} resubmitted for checkpoint: {step.checkpoint}.",
                )

            step.status = StepStatus.COMPLETED
            step.completed_at = now
            event = self._move_on(instance, now, WorkflowEventType.ADVANCE, {"result": result or ""})
            return await self._commit(
                "advance", instance, [event], self._progress_message(instance, f"Step {step.order} completed.")
            )

    async def approve(self, approver: str | None = None) -> EngineResult:
        """Approve the checkpoint on the current step and move on."""
        async with self._lock:
            loaded = await self._load_active("approve")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            step = instance.current
            if step.checkpoint is None:
                return self._refuse(
                    "approve",
                    TransitionErrorCode.NO_CHECKPOINT,
                    f"Step {step.order} has no checkpoint to approve.",
                    instance,
                )
            if instance.status is not WorkflowStatus.WAITING_CHECKPOINT:
                return self._invalid_status("approve", instance)

            now = utc_now()
            step.checkpoint_approved = True
            step.status = StepStatus.COMPLETED
            step.completed_at = now
            events = [
                WorkflowEvent(
                    type=WorkflowEventType.CHECKPOINT_APPROVED,
                    timestamp=now,
                    data={"stepOrder": step.order, "checkpoint": step.checkpoint, "approver": approver or ""},
                ),
                self._move_on(instance, now, WorkflowEventType.COMPLETE_STEP, {}),
            ]
            return await self._commit(
                "approve",
                instance,
                events,
                self._progress_message(instance, f"Checkpoint approved: {step.checkpoint}."),
            )

    async def reject(self, reason: str | None = None) -> EngineResult:
        """Reject the checkpoint on the current step, failing the step."""
        async with self._lock:
            loaded = await self._load_active("reject")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            step = instance.current
            if step.checkpoint is None:
                return self._refuse(
                    "reject",
                    TransitionErrorCode.NO_CHECKPOINT,
                    f"Step {step.order} has no checkpoint to reject.",
                    instance,
                )
            if instance.status is not WorkflowStatus.WAITING_CHECKPOINT:
                return self._invalid_status("reject", instance)

            now = utc_now()
            step.checkpoint_approved = False
            step.status = StepStatus.FAILED
            step.error = reason or "Checkpoint rejected"
            instance.status = WorkflowStatus.FAILED_STEP
            event = WorkflowEvent(
                type=WorkflowEventType.CHECKPOINT_REJECTED,
                timestamp=now,
                data={"stepOrder": step.order, "checkpoint": step.checkpoint, "reason": reason or ""},
            )
            return await self._commit(
                "reject",
                instance,
                [event],
                f"Checkpoint rejected: {reason or 'no reason given'}. Retry, skip or abort step {step.order}.",
            )

    async def fail(self, error: str) -> EngineResult:
        """Record that the running step failed."""
        async with self._lock:
            loaded = await self._load_active("fail")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            if instance.status is not WorkflowStatus.RUNNING:
                return self._invalid_status("fail", instance)

            now = utc_now()
            step = instance.current
            step.status = StepStatus.FAILED
            step.error = error
            instance.status = WorkflowStatus.FAILED_STEP
            event = WorkflowEvent(
                type=WorkflowEventType.STEP_FAILED,
                timestamp=now,
                data={"stepOrder": step.order, "error": error},
            )
            return await self._commit("fail", instance, [event], f"Step {step.order} failed: {error}")

    async def retry(self) -> EngineResult:
        """Re-run the failed step, aborting once ``max_retries`` is exceeded."""
        async with self._lock:
            loaded = await self._load_active("retry")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            if instance.status is not WorkflowStatus.FAILED_STEP:
                return self._invalid_status("retry", instance)

            now = utc_now()
            step = instance.current
            step.retry_count += 1
            max_retries = instance.config.max_retries

            if step.retry_count > max_retries:
                instance.status = WorkflowStatus.ABORTED
                step.error = f"Retries exhausted after {max_retries} attempt(s)"
                step.completed_at = now
                event = WorkflowEvent(
                    type=WorkflowEventType.ABORT,
                    timestamp=now,
                    data={
                        "reason": "retries_exhausted",
                        "stepOrder": step.order,
                        "retryCount": step.retry_count,
                        "maxRetries": max_retries,
                    },
                )
                log.warning("retries_exhausted", workflow_id=instance.id, step=step.order, max_retries=max_retries)
                return await self._commit(
                    "retry",
                    instance,
                    [event],
                    f"Step {step.order} exceeded {max_retries} retries; workflow aborted.",
                    retries_exhausted=True,
                )

            step.status = StepStatus.RUNNING
            step.error = None
            step.started_at = now
            step.completed_at = None
            if step.checkpoint is not None:
                step.checkpoint_approved = None
            instance.status = WorkflowStatus.RUNNING
            event = WorkflowEvent(
                type=WorkflowEventType.RETRY,
                timestamp=now,
                data={"stepOrder": step.order, "retryCount": step.retry_count},
            )
            return await self._commit(
                "retry",
                instance,
                [event],
                f"Retrying step {step.order} ({step.retry_count}/{max_retries}).",
            )

    async def skip(self, reason: str | None = None) -> EngineResult:
        """Skip a failed step, or a running step that is optional."""
        async with self._lock:
            loaded = await self._load_active("skip")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            step = instance.current
            if instance.status is WorkflowStatus.RUNNING and not step.optional:
                return self._refuse(
                    "skip",
                    TransitionErrorCode.NOT_OPTIONAL,
                    f"Step {step.order} ({step.agent}) is not optional and cannot be skipped while running.",
                    instance,
                )
            if instance.status not in (WorkflowStatus.RUNNING, WorkflowStatus.FAILED_STEP):
                return self._invalid_status("skip", instance)

            now = utc_now()
            step.status = StepStatus.SKIPPED
            step.completed_at = now
            if reason:
                step.result = f"Skipped: {reason}"
            events = [
                WorkflowEvent(
                    type=WorkflowEventType.SKIP,
                    timestamp=now,
                    data={"stepOrder": step.order, "reason": reason or ""},
                ),
                self._move_on(instance, now, WorkflowEventType.COMPLETE_STEP, {}),
            ]
            return await self._commit(
                "skip", instance, events, self._progress_message(instance, f"Step {step.order} skipped.")
            )

    async def abort(self, reason: str | None = None) -> EngineResult:
        """Stop the active workflow for good."""
        async with self._lock:
            loaded = await self._load_active("abort")
            if isinstance(loaded, EngineResult):
                return loaded
            instance = loaded

            now = utc_now()
            step = instance.current
            if step.status in (StepStatus.RUNNING, StepStatus.WAITING_CHECKPOINT):
                step.status = StepStatus.FAILED
                step.error = reason or "Workflow aborted"
                step.completed_at = now
            instance.status = WorkflowStatus.ABORTED
            event = WorkflowEvent(
                type=WorkflowEventType.ABORT,
                timestamp=now,
                data={"reason": reason or "", "stepOrder": step.order},
            )
            return await self._commit(
                "abort",
                instance,
                [event],
                f"Workflow aborted: {reason or 'no reason given'} ({instance.id}).",
            )

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    async def active_pointer(self) -> ActivePointer:
        return await self.store.load_active_pointer()

    def describe(self, workflow_type: str) -> str | None:
        """Render the guide for one catalog entry, or None for an unknown type."""
        definition = self.catalog.get(workflow_type)
        return describe_workflow(definition) if definition else None

    async def status(self, workflow_id: str | None = None) -> WorkflowInstance | None:
        """Return an instance by id, or the active one when no id is given."""
        target = workflow_id or await self.store.load_active_id()
        if not target:
            return None
        return await self.store.load_instance(target)

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> list[WorkflowInstance]:
        """Return recently touched instances, newest first; unreadable ones are left out."""
        instances = []
        for workflow_id in await self.store.list_recent_workflow_ids(limit):
            instance = await self.store.load_instance(workflow_id)
            if instance is not None:
                instances.append(instance)
        return instances

    async def history(self, workflow_id: str | None = None) -> list[WorkflowEvent]:
        """Return the event log for an id (or the active workflow); empty if unknown."""
        target = workflow_id or await self.store.load_active_id()
        if not target:
            return []
        history = await self.store.load_history(target)
        return history.events if history else []
