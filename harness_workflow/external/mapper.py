"""
Map workflow steps onto the external orchestration tool.

Two concerns live here:

1. Pure resolution: which external skill (or which agent role, for manual
   delegation) should carry out a step, and how to phrase that as a hint or
   as ready-to-use dispatch parameters.
2. Best-effort mirroring: after a state change, copy a one-line status into
   the external tool's project memory and refresh its workflow snapshot.

Mirroring never raises and never touches the harness's own state files. An
uninstalled external tool is reported as skipped; any read or write problem
is logged and counted as failed in the returned ``SyncOutcome``.
"""

from pathlib import Path

import structlog

from harness_workflow.enums import WorkflowStatus
from harness_workflow.exceptions import ExternalSyncError
from harness_workflow.external.compat import (
    AGENT_SKILL_MAP,
    DEFAULT_MEMORY_DIRECTORY,
    DEFAULT_MODEL,
    EXTERNAL_AGENT_PREFIX,
)
from harness_workflow.external.memory import ExternalMemoryBridge
from harness_workflow.models.domain import StepState, WorkflowContext, WorkflowInstance
from harness_workflow.models.results import DispatchHint, ExternalAction, SyncOutcome

log = structlog.get_logger(__name__)

STATUS_PREFIX = "[workflow] "
COMPLETED_PREFIX = "[workflow-completed]"
ABORTED_PREFIX = "[workflow-aborted]"
DEFAULT_MAX_OUTCOME_NOTES = 5


def resolve_external_action(step: StepState) -> ExternalAction:
    """Resolve the skill that carries out a step.

    The step's own hint wins, then the role table; with neither the action
    is manual and must be delegated to the agent role by hand.
    """
    if step.external_skill_hint:
        return ExternalAction(agent=step.agent, description=step.action, skill=step.external_skill_hint)

    defaults = AGENT_SKILL_MAP.get(step.agent)
    if defaults is not None and defaults.skill:
        return ExternalAction(agent=step.agent, description=step.action, skill=defaults.skill)

    return ExternalAction(agent=step.agent, description=step.action)


def build_agent_hint(step: StepState, workflow_type: str) -> str:
    """Render a multi-line hint describing the current step.

    Args:
        step: Current step of the active workflow.
        workflow_type: Catalog name of the workflow.

    Returns:
        Hint text, e.g.::

            [harness-workflow] Active workflow: bugfix
            Current step: 2 - debugger (Analyze root cause)
            External skill: /oh-my-claudecode:analyze
            Checkpoint: Root cause confirmed
            When the step is done: harness advance
    """
    external = resolve_external_action(step)
    lines = [
        f"[harness-workflow] Active workflow: {workflow_type}",
        f"Current step: {step.order} - {step.agent} ({step.action})",
    ]
    if external.skill:
        lines.append(f"External skill: {external.skill}")
    else:
        lines.append(f"Manual action: delegate to the {step.agent} agent")
    if step.automation_tool_hint:
        lines.append(f"Automation tool: {step.automation_tool_hint}")
    if step.checkpoint:
        lines.append(f"Checkpoint: {step.checkpoint}")
    lines.append("When the step is done: harness advance")
    return "\n".join(lines)


def build_dispatch_hint(step: StepState, context: WorkflowContext | None = None) -> DispatchHint:
    """Build delegation parameters the external tool can use directly."""
    defaults = AGENT_SKILL_MAP.get(step.agent)
    prompt = [step.action]
    if context is not None:
        if context.description:
            prompt.append(f"Task: {context.description}")
        if context.branch:
            prompt.append(f"Branch: {context.branch}")
        if context.related_issue:
            prompt.append(f"Related issue: {context.related_issue}")
    if step.checkpoint:
        prompt.append(f"Checkpoint to satisfy: {step.checkpoint}")

    return DispatchHint(
        agent_type=f"{EXTERNAL_AGENT_PREFIX}{step.agent}",
        skill=resolve_external_action(step).skill,
        model=defaults.model if defaults else DEFAULT_MODEL,
        prompt="\n".join(prompt),
    )


def status_note(instance: WorkflowInstance) -> str:
    step = instance.current
    return (
        f"{STATUS_PREFIX}{instance.workflow_type}: step {instance.current_step}/{instance.total_steps} "
        f"{instance.status.value} - {step.agent} {step.action}"
    )


def outcome_note(instance: WorkflowInstance) -> str | None:
    """Terminal summary line, or None while the workflow is still going."""
    if instance.status is WorkflowStatus.COMPLETED:
        return f"{COMPLETED_PREFIX} {instance.workflow_type} ({instance.id}): {instance.total_steps} steps completed"
    if instance.status is WorkflowStatus.ABORTED:
        return f"{ABORTED_PREFIX} {instance.workflow_type} ({instance.id}): aborted at step {instance.current_step}"
    return None


def _is_outcome(line: str) -> bool:
    return line.startswith(COMPLETED_PREFIX) or line.startswith(ABORTED_PREFIX)


def merge_notes(notes: str, instance: WorkflowInstance, max_outcome_notes: int = DEFAULT_MAX_OUTCOME_NOTES) -> str:
    """Rewrite the external notes text for the instance's current status.

    Any previous status line is dropped. A live instance gets a fresh status
    line; a finished one gets an outcome line instead, and outcome lines are
    capped at ``max_outcome_notes`` with the oldest evicted first. All other
    lines keep their order.
    """
    lines = [line for line in notes.split("\n") if line and not line.startswith(STATUS_PREFIX)]

    outcome = outcome_note(instance)
    if outcome is None:
        lines.append(status_note(instance))
        return "\n".join(lines)

    others = [line for line in lines if not _is_outcome(line)]
    outcomes = [line for line in lines if _is_outcome(line)]
    outcomes.append(outcome)
    keep = max(max_outcome_notes, 1)
    return "\n".join(others + outcomes[-keep:])


def workflow_snapshot(instance: WorkflowInstance | None) -> dict:
    """Snapshot document for the external tool's workflow state file."""
    if instance is None:
        return {"active": False}
    step = instance.current
    return {
        "active": not instance.is_terminal,
        "workflowId": instance.id,
        "workflowType": instance.workflow_type,
        "status": instance.status.value,
        "currentStep": instance.current_step,
        "totalSteps": instance.total_steps,
        "currentAgent": step.agent,
        "currentAction": step.action,
        "updatedAt": instance.updated_at,
    }


async def sync_instance_to_external_memory(
    project_root: str | Path,
    instance: WorkflowInstance,
    *,
    directory: str = DEFAULT_MEMORY_DIRECTORY,
    max_outcome_notes: int = DEFAULT_MAX_OUTCOME_NOTES,
) -> SyncOutcome:
    """Mirror the instance's status line into the external project memory.

    Returns:
        ``synced=1`` on success, ``skipped=1`` when the external tool is not
        installed, ``failed=1`` when the document could not be written.
    """
    outcome = SyncOutcome()
    bridge = ExternalMemoryBridge(project_root, directory)
    if not bridge.is_installed:
        outcome.skipped += 1
        return outcome

    memory = await bridge.read_project_memory() or {}
    notes = memory.get("notes")
    memory["notes"] = merge_notes(notes if isinstance(notes, str) else "", instance, max_outcome_notes)
    try:
        await bridge.write_project_memory(memory)
    except ExternalSyncError as e:
        log.warning("external_sync_failed", target="project_memory", workflow_id=instance.id, error=e.message)
        outcome.failed += 1
        return outcome

    outcome.synced += 1
    return outcome


async def sync_workflow_state(
    project_root: str | Path,
    instance: WorkflowInstance | None,
    *,
    directory: str = DEFAULT_MEMORY_DIRECTORY,
    max_outcome_notes: int = DEFAULT_MAX_OUTCOME_NOTES,
) -> SyncOutcome:
    """Refresh the external workflow snapshot and project memory notes.

    Args:
        project_root: Project root directory.
        instance: Instance to mirror; None when no workflow is active.
        directory: External tool directory, relative to the root.
        max_outcome_notes: Cap on terminal outcome lines kept in the notes.
    """
    outcome = SyncOutcome()
    bridge = ExternalMemoryBridge(project_root, directory)
    if not bridge.is_installed:
        log.debug("external_sync_skipped", reason="not_installed", path=str(bridge.root))
        outcome.skipped += 1
        return outcome

    try:
        await bridge.write_workflow_state(workflow_snapshot(instance))
        outcome.synced += 1
    except ExternalSyncError as e:
        log.warning("external_sync_failed", target="workflow_state", error=e.message)
        outcome.failed += 1

    if instance is None:
        outcome.skipped += 1
        return outcome

    notes = await sync_instance_to_external_memory(
        project_root, instance, directory=directory, max_outcome_notes=max_outcome_notes
    )
    outcome.synced += notes.synced
    outcome.skipped += notes.skipped
    outcome.failed += notes.failed
    log.debug("external_sync_completed", workflow_id=instance.id, synced=outcome.synced, failed=outcome.failed)
    return outcome
