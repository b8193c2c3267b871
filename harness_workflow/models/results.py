"""Result types returned by the store, the engine and the external mapper.

Soft failures are modeled as values here instead of exceptions: a missing
state file, a corrupt state file, an action that is not allowed from the
current status, or an external tool that is not installed are all ordinary
outcomes a caller can inspect and test.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from pydantic import Field

from harness_workflow.enums import NextActionType, TransitionErrorCode
from harness_workflow.models.domain import HarnessModel, WorkflowEvent, WorkflowInstance

T = TypeVar("T")


class LoadOutcome(str, Enum):
    """What happened when a state document was read."""

    FOUND = "found"
    MISSING = "missing"
    CORRUPT = "corrupt"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class LoadResult(Generic[T]):
    """Outcome of reading one persisted document.

    Attributes:
        outcome: Whether the document was found, missing or unreadable
        value: Parsed document when ``outcome`` is FOUND, else None
        error: Parse or validation error text for CORRUPT documents
    """

    outcome: LoadOutcome
    value: T | None = None
    error: str | None = None

    @classmethod
    def found(cls, value: T) -> LoadResult[T]:
        return cls(LoadOutcome.FOUND, value=value)

    @classmethod
    def missing(cls) -> LoadResult[T]:
        return cls(LoadOutcome.MISSING)

    @classmethod
    def corrupt(cls, error: str) -> LoadResult[T]:
        return cls(LoadOutcome.CORRUPT, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome is LoadOutcome.FOUND


class DispatchHint(HarnessModel):
    """Ready-to-use delegation parameters for the external tool."""

    agent_type: str
    skill: str | None = None
    model: str
    prompt: str


class NextAction(HarnessModel):
    """Guidance for the actor on what to do after an engine call."""

    type: NextActionType
    agent: str | None = None
    action: str | None = None
    skill: str | None = None
    checkpoint: str | None = None
    dispatch_hint: DispatchHint | None = None


class ExternalAction(HarnessModel):
    """Which skill or agent role should carry out a step."""

    agent: str
    description: str
    skill: str | None = None

    @property
    def is_manual(self) -> bool:
        """True when no skill resolves and the step must be delegated by hand."""
        return self.skill is None


class EngineResult(HarnessModel):
    """Structured answer to every engine action.

    A failed result is never an exception: ``error_code`` says why the action
    was refused and ``allowed_actions`` lists what would be accepted instead.
    """

    success: bool
    action: str
    message: str
    instance: WorkflowInstance | None = None
    next_action: NextAction | None = None
    error_code: TransitionErrorCode | None = None
    allowed_actions: list[str] = Field(default_factory=list)
    events: list[WorkflowEvent] = Field(default_factory=list)
    retries_exhausted: bool = False


@dataclass
class SyncOutcome:
    """Counters describing one best-effort external sync."""

    synced: int = 0
    skipped: int = 0
    failed: int = 0
