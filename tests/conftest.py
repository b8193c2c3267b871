"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest
import structlog

from harness_workflow.catalog import get_definition
from harness_workflow.config.settings import write_default_config
from harness_workflow.engine.memory_store import InMemoryWorkflowStore
from harness_workflow.engine.persistence import FileWorkflowStore
from harness_workflow.engine.workflow_engine import WorkflowEngine
from harness_workflow.enums import StepStatus, WorkflowStatus
from harness_workflow.models.domain import StepState, WorkflowContext, WorkflowInstance, utc_now


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def memory_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def engine(memory_store: InMemoryWorkflowStore) -> WorkflowEngine:
    """Engine backed by the in-memory store."""
    return WorkflowEngine(memory_store)


@pytest.fixture
def file_store(tmp_path: Path) -> FileWorkflowStore:
    return FileWorkflowStore(tmp_path)


@pytest.fixture
def file_engine(file_store: FileWorkflowStore) -> WorkflowEngine:
    """Engine backed by JSON files under a temporary project root."""
    return WorkflowEngine(file_store)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Project root with a default harness configuration."""
    write_default_config(tmp_path)
    return tmp_path


@pytest.fixture
def sample_instance() -> WorkflowInstance:
    """Bugfix instance sitting on its first step."""
    now = utc_now()
    steps = [StepState.from_pipeline_step(step) for step in get_definition("bugfix").pipeline]
    steps[0].status = StepStatus.RUNNING
    steps[0].started_at = now
    return WorkflowInstance(
        id="bugfix-20240115-k3x9",
        workflow_type="bugfix",
        status=WorkflowStatus.RUNNING,
        current_step=1,
        total_steps=len(steps),
        context=WorkflowContext(description="Login fails on SSO", branch="fix/sso-login"),
        steps=steps,
        created_at=now,
        updated_at=now,
    )
