"""
Read and write the external orchestration tool's per-project documents.

The external tool keeps its own storage under ``<root>/.omc``. Two documents
matter here:

    .omc/
    ├── project-memory.json        key-value memory; ``notes`` is newline-joined text
    └── state/
        └── workflow-state.json    snapshot of the active workflow

The tool is optional. When its directory does not exist the bridge reports
``is_installed == False`` and callers skip syncing entirely; the bridge never
creates the directory on its own.
"""

import json
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from harness_workflow.exceptions import ExternalSyncError
from harness_workflow.external.compat import (
    DEFAULT_MEMORY_DIRECTORY,
    memory_dir,
    project_memory_path,
    workflow_state_path,
)

log = structlog.get_logger(__name__)


class ExternalMemoryBridge:
    """File access to the external tool's memory documents.

    Reads are soft: a missing or malformed document reads as ``None``.
    Writes raise ``ExternalSyncError`` so the sync layer can count failures.
    """

    def __init__(self, project_root: str | Path, directory: str = DEFAULT_MEMORY_DIRECTORY) -> None:
        self.project_root = Path(project_root)
        self.directory = directory

    @property
    def root(self) -> Path:
        return memory_dir(self.project_root, self.directory)

    @property
    def is_installed(self) -> bool:
        return self.root.is_dir()

    @property
    def project_memory_file(self) -> Path:
        return project_memory_path(self.project_root, self.directory)

    @property
    def workflow_state_file(self) -> Path:
        return workflow_state_path(self.project_root, self.directory)

    async def _read_json(self, path: Path) -> dict[str, Any] | None:
        if not path.is_file():
            return None
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            if not content.strip():
                return None
            data = json.loads(content)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning("external_document_unreadable", path=str(path), error=str(e))
            return None
        if not isinstance(data, dict):
            log.warning("external_document_unexpected_shape", path=str(path), kind=type(data).__name__)
            return None
        return data

    async def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
            tmp_path.replace(path)
        except OSError as e:
            raise ExternalSyncError(f"Failed to write {path.name}: {e}") from e

    async def read_project_memory(self) -> dict[str, Any] | None:
        return await self._read_json(self.project_memory_file)

    async def write_project_memory(self, data: dict[str, Any]) -> None:
        await self._write_json(self.project_memory_file, data)

    async def read_workflow_state(self) -> dict[str, Any] | None:
        return await self._read_json(self.workflow_state_file)

    async def write_workflow_state(self, data: dict[str, Any]) -> None:
        await self._write_json(self.workflow_state_file, data)
