"""Tests for the pipeline catalog."""

import pytest
from pydantic import ValidationError

from harness_workflow.catalog import (
    WORKFLOW_DEFINITIONS,
    available_workflows,
    describe_workflow,
    get_definition,
    missing_modules,
)
from harness_workflow.external.compat import EXTERNAL_SKILL_PREFIX
from harness_workflow.models.domain import PipelineStep, WorkflowDefinition


class TestCatalogInvariants:
    """Every built-in definition must be well formed."""

    @pytest.mark.parametrize("name", list(WORKFLOW_DEFINITIONS))
    def test_pipeline_orders_are_contiguous(self, name):
        definition = WORKFLOW_DEFINITIONS[name]
        orders = [step.order for step in definition.pipeline]
        assert orders == list(range(1, len(orders) + 1))

    @pytest.mark.parametrize("name", list(WORKFLOW_DEFINITIONS))
    def test_name_matches_key(self, name):
        assert WORKFLOW_DEFINITIONS[name].name == name

    @pytest.mark.parametrize("name", list(WORKFLOW_DEFINITIONS))
    def test_skill_hints_use_external_prefix(self, name):
        for step in WORKFLOW_DEFINITIONS[name].pipeline:
            if step.external_skill_hint:
                assert step.external_skill_hint.startswith(EXTERNAL_SKILL_PREFIX)

    def test_available_workflows(self):
        assert available_workflows() == ["feature", "bugfix", "refactor", "release", "security"]


class TestBugfixDefinition:
    def test_shape(self):
        definition = get_definition("bugfix")

        assert len(definition.pipeline) == 6
        assert definition.pipeline[1].checkpoint == "Root cause confirmed"
        assert definition.pipeline[3].optional is True
        assert definition.pipeline[5].checkpoint == "Verification passed"
        assert definition.required_modules == frozenset({"core"})

    def test_unknown_type_returns_none(self):
        assert get_definition("deploy") is None


class TestDefinitionValidation:
    def test_gap_in_orders_rejected(self):
        with pytest.raises(ValidationError, match="step orders"):
            WorkflowDefinition(
                name="broken",
                description="Broken",
                pipeline=(
                    PipelineStep(order=1, agent="planner", action="Plan"),
                    PipelineStep(order=3, agent="executor", action="Build"),
                ),
            )

    def test_empty_pipeline_rejected(self):
        with pytest.raises(ValidationError, match="empty pipeline"):
            WorkflowDefinition(name="empty", description="Empty", pipeline=())

    def test_definitions_are_frozen(self):
        definition = get_definition("bugfix")
        with pytest.raises(ValidationError):
            definition.name = "other"


class TestModules:
    def test_missing_modules_sorted(self):
        assert missing_modules(get_definition("release"), ["core"]) == ["quality", "ship"]

    def test_all_modules_present(self):
        assert missing_modules(get_definition("bugfix"), {"core", "quality"}) == []


class TestDescribeWorkflow:
    def test_guide_lists_steps(self):
        text = describe_workflow(get_definition("bugfix"))

        assert text.splitlines()[0] == "bugfix - Bug fix workflow"
        assert "2. debugger: Analyze root cause  (checkpoint: Root cause confirmed)" in text
        assert "4. quality-reviewer: Review the fix (optional)" in text
        assert "[harness_verify_all]" in text

    def test_guide_shows_team_mode(self):
        assert "Team mode: ralph" in describe_workflow(get_definition("feature"))
