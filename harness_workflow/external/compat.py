"""Names and paths shared with the external orchestration tool.

Every reference to the external tool (its skill names, agent naming scheme,
role defaults and on-disk layout) lives here so a rename on its side means
one edit on ours.
"""

from pathlib import Path
from typing import NamedTuple

EXTERNAL_AGENT_PREFIX = "oh-my-claudecode:"
EXTERNAL_SKILL_PREFIX = "/oh-my-claudecode:"

DEFAULT_MEMORY_DIRECTORY = ".omc"
PROJECT_MEMORY_FILE = "project-memory.json"
WORKFLOW_STATE_FILE = "workflow-state.json"

EXTERNAL_SKILLS: dict[str, str] = {
    name: f"{EXTERNAL_SKILL_PREFIX}{name}"
    for name in (
        "analyze",
        "plan",
        "autopilot",
        "tdd",
        "git-master",
        "deepsearch",
        "code-review",
        "security-review",
        "cancel",
    )
}


class RoleDefaults(NamedTuple):
    """Skill and model the external tool uses for an agent role."""

    skill: str | None
    model: str


DEFAULT_MODEL = "sonnet"

AGENT_SKILL_MAP: dict[str, RoleDefaults] = {
    "analyst": RoleDefaults(EXTERNAL_SKILLS["analyze"], "opus"),
    "planner": RoleDefaults(EXTERNAL_SKILLS["plan"], "opus"),
    "architect": RoleDefaults(None, "opus"),
    "executor": RoleDefaults(EXTERNAL_SKILLS["autopilot"], "sonnet"),
    "deep-executor": RoleDefaults(EXTERNAL_SKILLS["autopilot"], "opus"),
    "test-engineer": RoleDefaults(EXTERNAL_SKILLS["tdd"], "sonnet"),
    "verifier": RoleDefaults(None, "sonnet"),
    "git-master": RoleDefaults(EXTERNAL_SKILLS["git-master"], "sonnet"),
    "explore": RoleDefaults(EXTERNAL_SKILLS["deepsearch"], "haiku"),
    "debugger": RoleDefaults(EXTERNAL_SKILLS["analyze"], "sonnet"),
    "quality-reviewer": RoleDefaults(EXTERNAL_SKILLS["code-review"], "sonnet"),
    "security-reviewer": RoleDefaults(EXTERNAL_SKILLS["security-review"], "sonnet"),
    "qa-tester": RoleDefaults(None, "sonnet"),
}


def memory_dir(project_root: str | Path, directory: str = DEFAULT_MEMORY_DIRECTORY) -> Path:
    """Root of the external tool's per-project storage."""
    return Path(project_root) / directory


def project_memory_path(project_root: str | Path, directory: str = DEFAULT_MEMORY_DIRECTORY) -> Path:
    return memory_dir(project_root, directory) / PROJECT_MEMORY_FILE


def workflow_state_path(project_root: str | Path, directory: str = DEFAULT_MEMORY_DIRECTORY) -> Path:
    return memory_dir(project_root, directory) / "state" / WORKFLOW_STATE_FILE
