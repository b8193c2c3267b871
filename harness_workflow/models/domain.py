"""
Domain models for workflow definitions and running instances.

This module contains the pydantic models that make up the persisted state of
the harness: the immutable pipeline definitions owned by the catalog, and the
mutable instance, history and active-pointer documents written under the
workflows directory.

All documents serialize with camelCase keys so the files on disk look like::

    {
        "id": "bugfix-20240115-k3x9",
        "workflowType": "bugfix",
        "status": "waiting_checkpoint",
        "currentStep": 2,
        "totalSteps": 6,
        "steps": [{"order": 1, "agent": "explore", "status": "completed", ...}],
        ...
    }

Fields can be populated either by alias or by their Python name.

Example:
    Building the runtime copy of a pipeline::

        steps = [StepState.from_pipeline_step(step) for step in definition.pipeline]
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from harness_workflow.enums import GuardLevel, StepStatus, WorkflowEventType, WorkflowStatus


def utc_now() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


class HarnessModel(BaseModel):
    """Base model for every persisted document (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class PipelineStep(HarnessModel):
    """One step of a workflow definition.

    Steps are immutable catalog data. The engine copies them into
    :class:`StepState` entries when an instance is created.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    order: int = Field(..., ge=1)
    """1-based position, unique and contiguous within a definition."""

    agent: str
    """Role identifier of the agent that performs the step (e.g. "planner")."""

    action: str
    """Human description of the work."""

    checkpoint: str | None = None
    """Label of the approval gate; when set the step only completes via approve."""

    optional: bool = False
    """Optional steps may be skipped while running."""

    external_skill_hint: str | None = None
    """Skill the external orchestration tool should run for this step."""

    automation_tool_hint: str | None = None
    """Harness tool that can automate the step (e.g. a verification runner)."""

    timeout: timedelta | None = None
    """Advisory only; nothing in the engine enforces it."""

    retryable: bool | None = None


class WorkflowDefinition(HarnessModel):
    """A named, static pipeline template."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    description: str
    required_modules: frozenset[str] = frozenset()
    pipeline: tuple[PipelineStep, ...]
    recommended_capabilities: tuple[str, ...] = ()
    team_mode: str | None = None

    @model_validator(mode="after")
    def validate_pipeline_order(self) -> WorkflowDefinition:
        """Require a non-empty pipeline numbered 1..n without gaps."""
        if not self.pipeline:
            raise ValueError(f"Workflow '{self.name}' has an empty pipeline")
        orders = [step.order for step in self.pipeline]
        expected = list(range(1, len(orders) + 1))
        if orders != expected:
            raise ValueError(f"Workflow '{self.name}' step orders must be {expected}, got {orders}")
        return self


class StepState(HarnessModel):
    """Runtime state of one step, owned by exactly one instance.

    Carries every field of the originating :class:`PipelineStep` plus
    progress tracking.
    """

    order: int = Field(..., ge=1)
    agent: str
    action: str
    checkpoint: str | None = None
    optional: bool = False
    external_skill_hint: str | None = None
    automation_tool_hint: str | None = None
    timeout: timedelta | None = None
    retryable: bool | None = None

    status: StepStatus = StepStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    checkpoint_approved: bool | None = None
    """None until the checkpoint is decided, then True/False."""

    started_at: str | None = None
    completed_at: str | None = None
    result: str | None = None
    error: str | None = None
    artifacts: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_pipeline_step(cls, step: PipelineStep) -> StepState:
        """Create a pending runtime copy of a definition step."""
        return cls(
            order=step.order,
            agent=step.agent,
            action=step.action,
            checkpoint=step.checkpoint,
            optional=step.optional,
            external_skill_hint=step.external_skill_hint,
            automation_tool_hint=step.automation_tool_hint,
            timeout=step.timeout,
            retryable=step.retryable,
        )

    @property
    def checkpoint_pending(self) -> bool:
        """True when the step has a gate that has not been approved yet."""
        return self.checkpoint is not None and self.checkpoint_approved is not True


class WorkflowContext(HarnessModel):
    """Caller-supplied metadata attached to an instance.

    The known fields are typed; anything else the caller passes is kept in
    the model's extra bag and written back unchanged.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    description: str | None = None
    branch: str | None = None
    related_issue: str | None = None

    @field_validator("description", "branch", "related_issue", mode="before")
    @classmethod
    def stringify_numbers(cls, value: Any) -> Any:
        """Accept issue numbers and similar scalars as text."""
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def extras(self) -> dict[str, Any]:
        """Keys that are not part of the documented schema."""
        return dict(self.model_extra or {})


class EngineConfig(HarnessModel):
    """Per-instance engine behavior, frozen into the instance at start."""

    guard_level: GuardLevel = GuardLevel.WARN
    auto_advance: bool = False
    sync_to_external: bool = True
    max_retries: int = Field(default=3, ge=0)
    history_enabled: bool = True
    auto_dispatch: bool = False
    team_mode: str | None = None


class WorkflowInstance(HarnessModel):
    """One running or finished execution of a definition.

    This is the aggregate root mutated by every engine action. Its ``steps``
    list is never reordered or resized after creation.
    """

    id: str
    workflow_type: str
    status: WorkflowStatus
    current_step: int = Field(..., ge=1)
    total_steps: int = Field(..., ge=1)
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    steps: list[StepState]
    config: EngineConfig = Field(default_factory=EngineConfig)
    created_at: str
    updated_at: str
    revision: int = Field(default=0, ge=0)
    """Incremented on each save; used to detect overlapping writers."""

    @model_validator(mode="after")
    def validate_step_bounds(self) -> WorkflowInstance:
        """Keep ``total_steps`` and ``current_step`` consistent with ``steps``."""
        if self.total_steps != len(self.steps):
            raise ValueError(f"total_steps={self.total_steps} but {len(self.steps)} steps are stored")
        if self.current_step > self.total_steps:
            raise ValueError(f"current_step={self.current_step} exceeds total_steps={self.total_steps}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def current(self) -> StepState:
        """The step ``current_step`` points at."""
        return self.steps[self.current_step - 1]

    @property
    def next_step(self) -> StepState | None:
        """The step after the current one, or None on the last step."""
        if self.current_step >= self.total_steps:
            return None
        return self.steps[self.current_step]


class WorkflowEvent(HarnessModel):
    """A single entry of an instance's audit trail."""

    type: WorkflowEventType
    timestamp: str = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowHistory(HarnessModel):
    """Append-only event log for one instance id."""

    workflow_id: str
    events: list[WorkflowEvent] = Field(default_factory=list)


class ActivePointer(HarnessModel):
    """Project-wide singleton naming the one active workflow, if any."""

    active_workflow_id: str | None = None
    started_at: str | None = None
