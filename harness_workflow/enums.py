"""Enumerations for workflow, step, and event states."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow instance.

    ``COMPLETED`` and ``ABORTED`` are terminal: once an instance reaches
    either of them no action may move it again.
    """

    RUNNING = "running"
    WAITING_CHECKPOINT = "waiting_checkpoint"
    FAILED_STEP = "failed_step"
    COMPLETED = "completed"
    ABORTED = "aborted"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.ABORTED)


class StepStatus(str, Enum):
    """Status of a single pipeline step inside an instance."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING_CHECKPOINT = "waiting_checkpoint"

    def __str__(self) -> str:
        return self.value


class WorkflowEventType(str, Enum):
    """Types of events recorded in a workflow's history."""

    START = "start"
    ADVANCE = "advance"
    COMPLETE_STEP = "complete_step"
    CHECKPOINT_APPROVED = "checkpoint_approved"
    CHECKPOINT_REJECTED = "checkpoint_rejected"
    STEP_FAILED = "step_failed"
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    COMPLETE = "complete"

    def __str__(self) -> str:
        return self.value


class GuardLevel(str, Enum):
    """How strictly the hook layer enforces workflow discipline.

    The engine stores this value but never consults it when deciding a
    transition.
    """

    BLOCK = "block"
    WARN = "warn"
    OFF = "off"

    def __str__(self) -> str:
        return self.value


class NextActionType(str, Enum):
    """Kind of guidance handed to the actor after an engine call."""

    RUN_EXTERNAL_SKILL = "run_external_skill"
    MANUAL_ACTION = "manual_action"
    AWAIT_CHECKPOINT = "await_checkpoint"
    RECOVER_STEP = "recover_step"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_ABORTED = "workflow_aborted"

    def __str__(self) -> str:
        return self.value


class TransitionErrorCode(str, Enum):
    """Reasons an engine action could not be applied."""

    NO_ACTIVE_WORKFLOW = "no_active_workflow"
    INSTANCE_NOT_FOUND = "instance_not_found"
    WORKFLOW_FINISHED = "workflow_finished"
    ACTIVE_WORKFLOW_EXISTS = "active_workflow_exists"
    UNKNOWN_WORKFLOW = "unknown_workflow"
    INVALID_STATUS = "invalid_status"
    NO_CHECKPOINT = "no_checkpoint"
    NOT_OPTIONAL = "not_optional"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    INVALID_INPUT = "invalid_input"

    def __str__(self) -> str:
        return self.value
