"""
Pipeline catalog of built-in workflow definitions.

The catalog is static data: each entry names an ordered pipeline
of agent steps, which of them are gated behind a human checkpoint, which are
optional, and which external skill or harness tool can carry them out.
Definitions are validated when the module is imported, so a malformed entry
fails fast rather than at ``start`` time.

Example:
    >>> from harness_workflow.catalog import get_definition
    >>> definition = get_definition("bugfix")
    >>> [step.agent for step in definition.pipeline]
    ['explore', 'debugger', 'executor', 'quality-reviewer', 'test-engineer', 'verifier']
"""

from harness_workflow.external.compat import EXTERNAL_SKILLS
from harness_workflow.models.domain import PipelineStep, WorkflowDefinition

VERIFY_TOOL = "harness_verify_all"


def _step(order: int, agent: str, action: str, **kwargs: object) -> PipelineStep:
    return PipelineStep(order=order, agent=agent, action=action, **kwargs)


WORKFLOW_DEFINITIONS: dict[str, WorkflowDefinition] = {
    "feature": WorkflowDefinition(
        name="feature",
        description="Feature development workflow",
        required_modules=frozenset({"core", "quality"}),
        pipeline=(
            _step(1, "analyst", "Analyze requirements", checkpoint="Requirements confirmed",
                  external_skill_hint=EXTERNAL_SKILLS["analyze"]),
            _step(2, "planner", "Draft implementation plan", checkpoint="Plan approved",
                  external_skill_hint=EXTERNAL_SKILLS["plan"]),
            _step(3, "architect", "Validate architecture", optional=True),
            _step(4, "executor", "Implement", checkpoint="Implementation complete",
                  external_skill_hint=EXTERNAL_SKILLS["autopilot"]),
            _step(5, "quality-reviewer", "Review quality", optional=True,
                  external_skill_hint=EXTERNAL_SKILLS["code-review"]),
            _step(6, "test-engineer", "Write and run tests", external_skill_hint=EXTERNAL_SKILLS["tdd"],
                  retryable=True),
            _step(7, "verifier", "Verify", checkpoint="Verification passed", automation_tool_hint=VERIFY_TOOL),
            _step(8, "git-master", "Commit and open PR", optional=True,
                  external_skill_hint=EXTERNAL_SKILLS["git-master"]),
        ),
        recommended_capabilities=("serena", "context7"),
        team_mode="ralph",
    ),
    "bugfix": WorkflowDefinition(
        name="bugfix",
        description="Bug fix workflow",
        required_modules=frozenset({"core"}),
        pipeline=(
            _step(1, "explore", "Explore the codebase", external_skill_hint=EXTERNAL_SKILLS["deepsearch"]),
            _step(2, "debugger", "Analyze root cause", checkpoint="Root cause confirmed",
                  external_skill_hint=EXTERNAL_SKILLS["analyze"]),
            _step(3, "executor", "Implement the fix", external_skill_hint=EXTERNAL_SKILLS["autopilot"]),
            _step(4, "quality-reviewer", "Review the fix", optional=True,
                  external_skill_hint=EXTERNAL_SKILLS["code-review"]),
            _step(5, "test-engineer", "Run regression tests", external_skill_hint=EXTERNAL_SKILLS["tdd"],
                  retryable=True),
            _step(6, "verifier", "Verify the fix", checkpoint="Verification passed",
                  automation_tool_hint=VERIFY_TOOL),
        ),
    ),
    "refactor": WorkflowDefinition(
        name="refactor",
        description="Refactoring workflow",
        required_modules=frozenset({"core", "quality"}),
        pipeline=(
            _step(1, "planner", "Plan the refactoring", checkpoint="Plan approved",
                  external_skill_hint=EXTERNAL_SKILLS["plan"]),
            _step(2, "architect", "Review architecture"),
            _step(3, "executor", "Apply the refactoring", external_skill_hint=EXTERNAL_SKILLS["autopilot"]),
            _step(4, "quality-reviewer", "Review quality", external_skill_hint=EXTERNAL_SKILLS["code-review"]),
            _step(5, "verifier", "Verify", checkpoint="Verification passed", automation_tool_hint=VERIFY_TOOL),
        ),
        recommended_capabilities=("serena",),
        team_mode="autopilot",
    ),
    "release": WorkflowDefinition(
        name="release",
        description="Release workflow",
        required_modules=frozenset({"core", "quality", "ship"}),
        pipeline=(
            _step(1, "security-reviewer", "Security review", optional=True,
                  external_skill_hint=EXTERNAL_SKILLS["security-review"]),
            _step(2, "quality-reviewer", "Release quality review",
                  external_skill_hint=EXTERNAL_SKILLS["code-review"]),
            _step(3, "verifier", "Verify release readiness", checkpoint="Release ready",
                  automation_tool_hint=VERIFY_TOOL),
            _step(4, "qa-tester", "QA testing"),
            _step(5, "git-master", "Tag and publish the release", external_skill_hint=EXTERNAL_SKILLS["git-master"]),
        ),
        recommended_capabilities=("codex",),
    ),
    "security": WorkflowDefinition(
        name="security",
        description="Security hardening workflow",
        required_modules=frozenset({"core", "security"}),
        pipeline=(
            _step(1, "security-reviewer", "Scan for vulnerabilities", checkpoint="Vulnerability list confirmed",
                  external_skill_hint=EXTERNAL_SKILLS["security-review"]),
            _step(2, "executor", "Implement security patches", external_skill_hint=EXTERNAL_SKILLS["autopilot"]),
            _step(3, "test-engineer", "Security testing", external_skill_hint=EXTERNAL_SKILLS["tdd"]),
            _step(4, "verifier", "Security verification", checkpoint="Verification passed",
                  automation_tool_hint=VERIFY_TOOL),
        ),
        recommended_capabilities=("serena", "codex"),
    ),
}


def get_definition(workflow_type: str) -> WorkflowDefinition | None:
    """Look up a definition by name, or None when the type is unknown."""
    return WORKFLOW_DEFINITIONS.get(workflow_type)


def available_workflows() -> list[str]:
    return list(WORKFLOW_DEFINITIONS)


def missing_modules(definition: WorkflowDefinition, installed: list[str] | set[str]) -> list[str]:
    """Modules a definition requires that the project has not installed.

    Args:
        definition: Workflow definition to check
        installed: Module names from the project configuration

    Returns:
        Sorted list of required module names that are absent
    """
    return sorted(definition.required_modules - set(installed))


def describe_workflow(definition: WorkflowDefinition) -> str:
    """Render a plain-text guide for one workflow definition.

    Example output::

        bugfix - Bug fix workflow
        Required modules: core
          1. explore: Explore the codebase  [/oh-my-claudecode:deepsearch]
          2. debugger: Analyze root cause  (checkpoint: Root cause confirmed)
    """
    lines = [f"{definition.name} - {definition.description}"]
    lines.append(f"Required modules: {', '.join(sorted(definition.required_modules)) or 'none'}")
    if definition.recommended_capabilities:
        lines.append(f"Recommended: {', '.join(definition.recommended_capabilities)}")
    if definition.team_mode:
        lines.append(f"Team mode: {definition.team_mode}")

    for step in definition.pipeline:
        line = f"  {step.order}. {step.agent}: {step.action}"
        if step.optional:
            line += " (optional)"
        if step.checkpoint:
            line += f"  (checkpoint: {step.checkpoint})"
        hint = step.external_skill_hint or step.automation_tool_hint
        if hint:
            line += f"  [{hint}]"
        lines.append(line)
    return "\n".join(lines)
