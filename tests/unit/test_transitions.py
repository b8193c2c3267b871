"""Tests for the workflow transition table."""

import pytest

from harness_workflow.engine.transitions import TRANSITION_TABLE, allowed_actions, is_allowed
from harness_workflow.enums import WorkflowStatus
from harness_workflow.models.domain import StepState


@pytest.fixture
def required_step() -> StepState:
    return StepState(order=1, agent="executor", action="Implement")


@pytest.fixture
def optional_step() -> StepState:
    return StepState(order=4, agent="quality-reviewer", action="Review", optional=True)


def test_every_status_has_an_entry():
    assert set(TRANSITION_TABLE) == set(WorkflowStatus)


@pytest.mark.parametrize("status", [WorkflowStatus.COMPLETED, WorkflowStatus.ABORTED])
def test_terminal_statuses_allow_nothing(status):
    assert allowed_actions(status) == []


def test_running_optional_step_allows_skip(optional_step):
    assert allowed_actions(WorkflowStatus.RUNNING, optional_step) == ["advance", "skip", "fail", "abort"]


def test_running_required_step_drops_skip(required_step):
    assert allowed_actions(WorkflowStatus.RUNNING, required_step) == ["advance", "fail", "abort"]


def test_waiting_checkpoint():
    assert allowed_actions(WorkflowStatus.WAITING_CHECKPOINT) == ["approve", "reject", "abort"]


def test_failed_step_allows_skip_regardless_of_optional(required_step):
    assert allowed_actions(WorkflowStatus.FAILED_STEP, required_step) == ["retry", "skip", "abort"]


def test_reads_always_allowed():
    assert is_allowed(WorkflowStatus.COMPLETED, "status")
    assert is_allowed(WorkflowStatus.ABORTED, "history")


def test_is_allowed(required_step):
    assert is_allowed(WorkflowStatus.RUNNING, "abort", required_step)
    assert not is_allowed(WorkflowStatus.RUNNING, "skip", required_step)
    assert not is_allowed(WorkflowStatus.COMPLETED, "advance")
