"""Project configuration for the workflow harness.

Key Components:
    - HarnessSettings: Settings container with YAML loading support
    - WorkflowSettings: Engine behavior (guard level, retries, history, ...)
    - ExternalSettings: External orchestration tool integration

Example:
    >>> from harness_workflow.config import load_project_settings
    >>> settings = load_project_settings("/path/to/project")
    >>> settings.workflow.max_retries
    3
"""

from harness_workflow.config.settings import (
    CONFIG_PATH,
    ExternalSettings,
    HarnessSettings,
    WorkflowSettings,
    is_installed,
    load_project_settings,
    write_default_config,
)

__all__ = [
    "CONFIG_PATH",
    "ExternalSettings",
    "HarnessSettings",
    "WorkflowSettings",
    "is_installed",
    "load_project_settings",
    "write_default_config",
]
