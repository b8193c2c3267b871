"""In-memory ``WorkflowStore`` for tests and embedding."""

from __future__ import annotations

import itertools

from harness_workflow.exceptions import StaleInstanceError
from harness_workflow.models.domain import ActivePointer, WorkflowEvent, WorkflowHistory, WorkflowInstance, utc_now


class InMemoryWorkflowStore:
    """Keep workflow documents in dictionaries.

    Stored values are deep copies, so mutating an instance after saving it
    does not leak into the store, matching the file-backed behavior.
    """

    def __init__(self) -> None:
        self.pointer = ActivePointer()
        self.instances: dict[str, WorkflowInstance] = {}
        self.histories: dict[str, WorkflowHistory] = {}
        self._touched: dict[str, int] = {}
        self._clock = itertools.count()

    def _touch(self, workflow_id: str) -> None:
        self._touched[workflow_id] = next(self._clock)

    async def load_active_pointer(self) -> ActivePointer:
        return self.pointer.model_copy()

    async def load_active_id(self) -> str | None:
        return self.pointer.active_workflow_id

    async def save_active_pointer(self, workflow_id: str) -> None:
        self.pointer = ActivePointer(active_workflow_id=workflow_id, started_at=utc_now())

    async def clear_active_pointer(self) -> None:
        self.pointer = ActivePointer()

    async def load_instance(self, workflow_id: str) -> WorkflowInstance | None:
        instance = self.instances.get(workflow_id)
        return instance.model_copy(deep=True) if instance else None

    async def save_instance(self, instance: WorkflowInstance, *, check_revision: bool = False) -> None:
        stored = self.instances.get(instance.id)
        if check_revision and stored is not None and stored.revision != instance.revision:
            raise StaleInstanceError(instance.id, instance.revision, stored.revision)
        instance.revision += 1
        self.instances[instance.id] = instance.model_copy(deep=True)
        self._touch(instance.id)

    async def load_history(self, workflow_id: str) -> WorkflowHistory | None:
        history = self.histories.get(workflow_id)
        return history.model_copy(deep=True) if history else None

    async def append_events(self, workflow_id: str, events: list[WorkflowEvent]) -> None:
        history = self.histories.setdefault(workflow_id, WorkflowHistory(workflow_id=workflow_id))
        history.events.extend(event.model_copy(deep=True) for event in events)
        self._touch(workflow_id)

    async def list_recent_workflow_ids(self, limit: int = 10) -> list[str]:
        ordered = sorted(self._touched, key=self._touched.__getitem__, reverse=True)
        return ordered[: max(limit, 0)]
