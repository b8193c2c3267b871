"""Workflow state machine and its persistence.

Key Components:
    - WorkflowEngine: Applies start/advance/approve/reject/retry/skip/fail/abort
    - FileWorkflowStore: JSON documents under ``.harness/workflows``
    - InMemoryWorkflowStore: Dictionary-backed store for tests and embedding
    - transitions: Which actions each workflow status accepts

Example:
    >>> from harness_workflow.engine import FileWorkflowStore, WorkflowEngine
    >>> engine = WorkflowEngine(FileWorkflowStore(project_root))
    >>> result = await engine.start("feature", {"description": "Add SSO login"})
"""

from harness_workflow.engine.memory_store import InMemoryWorkflowStore
from harness_workflow.engine.persistence import FileWorkflowStore, WorkflowStore, generate_workflow_id
from harness_workflow.engine.transitions import TRANSITION_TABLE, allowed_actions, is_allowed
from harness_workflow.engine.workflow_engine import WorkflowEngine, resolve_next_action

__all__ = [
    "TRANSITION_TABLE",
    "FileWorkflowStore",
    "InMemoryWorkflowStore",
    "WorkflowEngine",
    "WorkflowStore",
    "allowed_actions",
    "generate_workflow_id",
    "is_allowed",
    "resolve_next_action",
]
