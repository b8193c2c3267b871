"""Data models for the workflow harness.

Key Components:
    - domain: Persisted documents (definitions, instances, history, pointer)
    - results: Engine, store and mapper result types

Example:
    >>> from harness_workflow.models import WorkflowInstance
    >>> instance = WorkflowInstance.model_validate_json(path.read_text())
"""

from harness_workflow.models.domain import (
    ActivePointer,
    EngineConfig,
    PipelineStep,
    StepState,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowHistory,
    WorkflowInstance,
    utc_now,
)
from harness_workflow.models.results import (
    DispatchHint,
    EngineResult,
    ExternalAction,
    LoadOutcome,
    LoadResult,
    NextAction,
    SyncOutcome,
)

__all__ = [
    "ActivePointer",
    "DispatchHint",
    "EngineConfig",
    "EngineResult",
    "ExternalAction",
    "LoadOutcome",
    "LoadResult",
    "NextAction",
    "PipelineStep",
    "StepState",
    "SyncOutcome",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowEvent",
    "WorkflowHistory",
    "WorkflowInstance",
    "utc_now",
]
