"""
File-backed persistence for workflow instances, histories and the active pointer.

This module provides the ``WorkflowStore`` protocol the engine depends on and
``FileWorkflowStore``, its on-disk implementation. Nothing is cached between
calls: every read goes to disk and every write replaces the whole document.

Directory Structure:
    All files live under a workflows directory relative to the project root
    (``.harness/workflows`` by default)::

        .harness/workflows/
        ├── active.json                    {"activeWorkflowId": ..., "startedAt": ...}
        ├── bugfix-20240115-k3x9/
        │   ├── state.json                 the WorkflowInstance
        │   └── history.json               {"workflowId": ..., "events": [...]}
        └── feature-20240114-a0zq/
            └── ...

Soft Failure Model:
    Reads never raise. A missing file yields ``LoadOutcome.MISSING`` and a file
    that is not valid JSON or fails validation yields ``LoadOutcome.CORRUPT``;
    the convenience ``load_*`` methods collapse both to ``None``. Only write
    failures surface, as ``PersistenceError``.

Write Model:
    Documents are written to a ``.tmp`` sibling and renamed over the target,
    so a reader never sees a half-written file. There is no cross-process
    lock; overlapping writers are detected through the instance ``revision``
    (see ``save_instance``).

Example:
    >>> store = FileWorkflowStore("/path/to/project")
    >>> active_id = await store.load_active_id()
    >>> instance = await store.load_instance(active_id) if active_id else None
"""

import json
import re
import secrets
import string
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, TypeVar

import aiofiles
import structlog
from pydantic import ValidationError

from harness_workflow.exceptions import PersistenceError, StaleInstanceError
from harness_workflow.models.domain import (
    ActivePointer,
    HarnessModel,
    WorkflowEvent,
    WorkflowHistory,
    WorkflowInstance,
    utc_now,
)
from harness_workflow.models.results import LoadResult

log = structlog.get_logger(__name__)

DEFAULT_WORKFLOWS_DIRECTORY = ".harness/workflows"
ACTIVE_FILE = "active.json"
STATE_FILE = "state.json"
HISTORY_FILE = "history.json"

_ID_ALPHABET = string.digits + string.ascii_lowercase
_VALID_ID = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

ModelT = TypeVar("ModelT", bound=HarnessModel)


def generate_workflow_id(workflow_type: str, now: datetime | None = None) -> str:
    """Build an id of the form ``{type}-{YYYYMMDD}-{4 base36 chars}``.

    Args:
        workflow_type: Catalog name of the workflow
        now: Clock override for tests

    Returns:
        New workflow id, e.g. ``"bugfix-20240115-k3x9"``
    """
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
    return f"{workflow_type}-{stamp}-{suffix}"


def is_valid_workflow_id(workflow_id: str) -> bool:
    """Check that an id is safe to use as a directory name."""
    return bool(_VALID_ID.match(workflow_id)) and ".." not in workflow_id


class WorkflowStore(Protocol):
    """Storage backend the engine reads and writes through."""

    async def load_active_pointer(self) -> ActivePointer:
        """Return the pointer document; an empty pointer when none is stored."""

    async def load_active_id(self) -> str | None:
        """Return the active workflow id, or None."""

    async def save_active_pointer(self, workflow_id: str) -> None:
        """Mark ``workflow_id`` as the project's active workflow."""

    async def clear_active_pointer(self) -> None:
        """Reset the pointer to no active workflow."""

    async def load_instance(self, workflow_id: str) -> WorkflowInstance | None:
        """Return the instance, or None if missing or unreadable."""

    async def save_instance(self, instance: WorkflowInstance, *, check_revision: bool = False) -> None:
        """Persist the full instance document."""

    async def load_history(self, workflow_id: str) -> WorkflowHistory | None:
        """Return the event history, or None if missing or unreadable."""

    async def append_events(self, workflow_id: str, events: list[WorkflowEvent]) -> None:
        """Append events to the history in order."""

    async def list_recent_workflow_ids(self, limit: int = 10) -> list[str]:
        """Return ids of recently touched workflows, newest first."""


class FileWorkflowStore:
    """Persist workflow documents as JSON files under the project root.

    Attributes:
        project_root: Project the workflows belong to.
        workflows_dir: Directory holding ``active.json`` and one
            subdirectory per workflow id.
    """

    def __init__(self, project_root: str | Path, workflows_directory: str = DEFAULT_WORKFLOWS_DIRECTORY) -> None:
        """Initialize the store.

        The workflows directory is created lazily on first write so that
        read-only commands leave the project untouched.

        Args:
            project_root: Project root directory.
            workflows_directory: Workflows directory, relative to the root.
        """
        self.project_root = Path(project_root)
        self.workflows_dir = self.project_root / workflows_directory

    def _active_path(self) -> Path:
        return self.workflows_dir / ACTIVE_FILE

    def _workflow_dir(self, workflow_id: str) -> Path:
        return self.workflows_dir / workflow_id

    def _state_path(self, workflow_id: str) -> Path:
        return self._workflow_dir(workflow_id) / STATE_FILE

    def _history_path(self, workflow_id: str) -> Path:
        return self._workflow_dir(workflow_id) / HISTORY_FILE

    async def _read_document(self, path: Path, model: type[ModelT]) -> LoadResult[ModelT]:
        """Read and validate one JSON document.

        Args:
            path: File to read.
            model: Pydantic model the content must validate against.

        Returns:
            FOUND with the parsed model, MISSING when the file does not exist
            or is empty, CORRUPT when it cannot be read or parsed.
        """
        if not path.is_file():
            return LoadResult.missing()

        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            log.warning("state_file_unreadable", path=str(path), error=str(e))
            return LoadResult.corrupt(str(e))

        if not content.strip():
            return LoadResult.missing()

        try:
            return LoadResult.found(model.model_validate_json(content))
        except ValidationError as e:
            log.warning("state_file_corrupt", path=str(path), errors=e.error_count())
            return LoadResult.corrupt(str(e))

    async def _write_document(self, path: Path, document: HarnessModel) -> None:
        """Write a document atomically via a temporary sibling file.

        Raises:
            PersistenceError: If the directory or file cannot be written.
        """
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(document.to_document(), indent=2, ensure_ascii=False) + "\n")
            # Atomic rename - safe on POSIX when same filesystem
            tmp_path.replace(path)
        except OSError as e:
            raise PersistenceError(f"Failed to write state document: {e}", path=str(path)) from e

    # ------------------------------------------------------------------
    # Active pointer
    # ------------------------------------------------------------------

    async def read_active_pointer(self) -> LoadResult[ActivePointer]:
        return await self._read_document(self._active_path(), ActivePointer)

    async def load_active_pointer(self) -> ActivePointer:
        """Return the pointer document.

        Missing and malformed pointer files both read as "no active workflow".
        """
        result = await self.read_active_pointer()
        return result.value if result.ok and result.value is not None else ActivePointer()

    async def load_active_id(self) -> str | None:
        return (await self.load_active_pointer()).active_workflow_id

    async def save_active_pointer(self, workflow_id: str) -> None:
        pointer = ActivePointer(active_workflow_id=workflow_id, started_at=utc_now())
        await self._write_document(self._active_path(), pointer)
        log.debug("active_pointer_set", workflow_id=workflow_id)

    async def clear_active_pointer(self) -> None:
        await self._write_document(self._active_path(), ActivePointer())
        log.debug("active_pointer_cleared")

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def read_instance(self, workflow_id: str) -> LoadResult[WorkflowInstance]:
        if not is_valid_workflow_id(workflow_id):
            return LoadResult.missing()
        return await self._read_document(self._state_path(workflow_id), WorkflowInstance)

    async def load_instance(self, workflow_id: str) -> WorkflowInstance | None:
        return (await self.read_instance(workflow_id)).value

    async def save_instance(self, instance: WorkflowInstance, *, check_revision: bool = False) -> None:
        """Overwrite the instance document and bump its revision in place.

        Args:
            instance: Instance to persist. Its ``revision`` is incremented
                before writing, so the caller's object matches the file.
            check_revision: When True, refuse to write if the document on
                disk no longer carries the revision the caller loaded.

        Raises:
            StaleInstanceError: If ``check_revision`` is set and another
                writer saved the instance in the meantime.
            PersistenceError: If the file cannot be written.
        """
        if not is_valid_workflow_id(instance.id):
            raise PersistenceError(f"Invalid workflow id: {instance.id!r}")

        if check_revision:
            on_disk = await self.read_instance(instance.id)
            if on_disk.ok and on_disk.value is not None and on_disk.value.revision != instance.revision:
                raise StaleInstanceError(instance.id, instance.revision, on_disk.value.revision)

        instance.revision += 1
        await self._write_document(self._state_path(instance.id), instance)
        log.debug("instance_saved", workflow_id=instance.id, revision=instance.revision)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def read_history(self, workflow_id: str) -> LoadResult[WorkflowHistory]:
        if not is_valid_workflow_id(workflow_id):
            return LoadResult.missing()
        return await self._read_document(self._history_path(workflow_id), WorkflowHistory)

    async def load_history(self, workflow_id: str) -> WorkflowHistory | None:
        return (await self.read_history(workflow_id)).value

    async def append_event(self, workflow_id: str, event: WorkflowEvent) -> None:
        await self.append_events(workflow_id, [event])

    async def append_events(self, workflow_id: str, events: list[WorkflowEvent]) -> None:
        """Append events to a workflow's history, creating it if needed.

        A corrupt history file is moved aside to ``history.json.corrupt``
        before a fresh history is started, so no recorded bytes are lost.
        """
        if not events:
            return
        if not is_valid_workflow_id(workflow_id):
            raise PersistenceError(f"Invalid workflow id: {workflow_id!r}")

        path = self._history_path(workflow_id)
        result = await self.read_history(workflow_id)
        if result.ok and result.value is not None:
            history = result.value
        else:
            if result.error is not None:
                backup = path.with_name(HISTORY_FILE + ".corrupt")
                try:
                    path.replace(backup)
                except OSError as e:
                    raise PersistenceError(f"Cannot move corrupt history aside: {e}", path=str(path)) from e
                log.warning("history_file_replaced", workflow_id=workflow_id, backup=str(backup))
            history = WorkflowHistory(workflow_id=workflow_id)

        history.events.extend(events)
        await self._write_document(path, history)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_recent_workflow_ids(self, limit: int = 10) -> list[str]:
        """List workflow directories by modification time, newest first.

        Args:
            limit: Maximum number of ids to return.

        Returns:
            Workflow ids; empty when the workflows directory does not exist.
        """
        if limit <= 0 or not self.workflows_dir.is_dir():
            return []

        entries: list[tuple[float, str]] = []
        try:
            for child in self.workflows_dir.iterdir():
                if child.is_dir() and is_valid_workflow_id(child.name):
                    entries.append((child.stat().st_mtime, child.name))
        except OSError as e:
            log.warning("workflow_listing_failed", path=str(self.workflows_dir), error=str(e))
            return []

        entries.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
        return [name for _, name in entries[:limit]]
