"""
Transition table for the workflow state machine.

The table answers one question: which mutating actions may be applied to an
instance in a given status. It is pure data plus two helpers and carries no
I/O, so the engine and any presentation layer share a single source of truth
for "what can I do next".

State Diagram::

    start ──> running ──advance──> running (next step) ──...──> completed
                 │  ▲                    │
                 │  │ retry              │ next step has a checkpoint
                 │  │                    ▼
          fail   │  failed_step <──reject── waiting_checkpoint ──approve──> running
                 ▼  ▲
             failed_step

    abort is accepted from every non-terminal status.
    skip is accepted from failed_step, and from running on optional steps.
"""

from harness_workflow.enums import WorkflowStatus
from harness_workflow.models.domain import StepState

READ_ACTIONS = frozenset({"status", "list", "history"})

MUTATING_ACTIONS = ("advance", "approve", "reject", "retry", "skip", "fail", "abort")

TRANSITION_TABLE: dict[WorkflowStatus, tuple[str, ...]] = {
    WorkflowStatus.RUNNING: ("advance", "skip", "fail", "abort"),
    WorkflowStatus.WAITING_CHECKPOINT: ("approve", "reject", "abort"),
    WorkflowStatus.FAILED_STEP: ("retry", "skip", "abort"),
    WorkflowStatus.COMPLETED: (),
    WorkflowStatus.ABORTED: (),
}


def allowed_actions(status: WorkflowStatus, step: StepState | None = None) -> list[str]:
    """List the mutating actions valid from ``status``.

    Args:
        status: Current instance status
        step: Current step, used to drop ``skip`` on non-optional running steps

    Returns:
        Action names in table order; empty for terminal statuses
    """
    actions = list(TRANSITION_TABLE[status])
    if status is WorkflowStatus.RUNNING and step is not None and not step.optional:
        actions.remove("skip")
    return actions


def is_allowed(status: WorkflowStatus, action: str, step: StepState | None = None) -> bool:
    """Check whether ``action`` may be applied from ``status``."""
    if action in READ_ACTIONS:
        return True
    return action in allowed_actions(status, step)
