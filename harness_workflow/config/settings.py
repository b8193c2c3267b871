"""
Configuration system using Pydantic for type-safe settings management.

Project settings live in ``.harness/config.yaml`` under the project root. The
file doubles as the installation marker: a project without it has not run
``harness init`` and every workflow command refuses to run there.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from harness_workflow.engine.persistence import DEFAULT_WORKFLOWS_DIRECTORY
from harness_workflow.enums import GuardLevel
from harness_workflow.exceptions import ConfigurationError, HarnessNotInstalledError
from harness_workflow.external.compat import DEFAULT_MEMORY_DIRECTORY
from harness_workflow.models.domain import EngineConfig

CONFIG_PATH = ".harness/config.yaml"

DEFAULT_CONFIG_TEMPLATE = """\
# Harness workflow configuration.
# Values may reference environment variables: ${VAR_NAME} or ${VAR_NAME:-default}
modules:
  - core
  - quality

workflow:
  workflows_directory: .harness/workflows
  guard_level: warn          # block | warn | off
  auto_advance: false
  sync_to_external: true
  max_retries: 3
  history_enabled: true
  auto_dispatch: false
  list_limit: 10

external:
  memory_directory: .omc
  max_outcome_notes: 5
"""


class WorkflowSettings(BaseModel):
    """Workflow engine behavior."""

    workflows_directory: str = Field(
        default=DEFAULT_WORKFLOWS_DIRECTORY, description="Directory for workflow state, relative to the project root"
    )
    guard_level: GuardLevel = Field(default=GuardLevel.WARN, description="How strictly hooks enforce the workflow")
    auto_advance: bool = Field(default=False, description="Hint for hooks to advance after a step's tool finishes")
    sync_to_external: bool = Field(default=True, description="Mirror state into the external tool after each action")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries allowed per step before aborting")
    history_enabled: bool = Field(default=True, description="Record an event history per workflow")
    auto_dispatch: bool = Field(default=False, description="Attach dispatch hints to next actions")
    list_limit: int = Field(default=10, ge=1, description="Default number of workflows listed")


class ExternalSettings(BaseModel):
    """External orchestration tool integration."""

    memory_directory: str = Field(default=DEFAULT_MEMORY_DIRECTORY, description="External tool directory")
    max_outcome_notes: int = Field(default=5, ge=1, description="Finished-workflow lines kept in external notes")


class HarnessSettings(BaseSettings):
    """Project settings for the workflow harness.

    Environment variables with the ``HARNESS_`` prefix override file values,
    using ``__`` for nesting (e.g. ``HARNESS_WORKFLOW__MAX_RETRIES=5``).
    """

    model_config = SettingsConfigDict(
        env_prefix="HARNESS_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    modules: list[str] = Field(default_factory=lambda: ["core"])
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    external: ExternalSettings = Field(default_factory=ExternalSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats the YAML file, which arrives as init kwargs
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def workflows_dir(self) -> Path:
        return Path(self.workflow.workflows_directory)

    def engine_config(self, **overrides: Any) -> EngineConfig:
        """Build the engine configuration for a new workflow instance.

        Args:
            **overrides: Values that win over the file, e.g. a guard level
                given on the command line. ``None`` values are ignored.

        Returns:
            EngineConfig combining defaults, file values and overrides
        """
        values: dict[str, Any] = {
            "guard_level": self.workflow.guard_level,
            "auto_advance": self.workflow.auto_advance,
            "sync_to_external": self.workflow.sync_to_external,
            "max_retries": self.workflow.max_retries,
            "history_enabled": self.workflow.history_enabled,
            "auto_dispatch": self.workflow.auto_dispatch,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return EngineConfig(**values)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> HarnessSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            HarnessSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, encoding="utf-8") as f:
                yaml_content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        # An empty file means "all defaults"
        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        Raises:
            ValueError: If a required environment variable is not set

        Note:
            YAML comment lines (starting with #) are preserved unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))


def config_file_path(project_root: str | Path) -> Path:
    return Path(project_root) / CONFIG_PATH


def is_installed(project_root: str | Path) -> bool:
    return config_file_path(project_root).is_file()


def load_project_settings(project_root: str | Path) -> HarnessSettings:
    """Load the settings of an initialized project.

    Raises:
        HarnessNotInstalledError: If the project has no configuration file
        ConfigurationError: If the file exists but is invalid
    """
    if not is_installed(project_root):
        raise HarnessNotInstalledError(str(project_root))
    return HarnessSettings.from_yaml(config_file_path(project_root))


def write_default_config(project_root: str | Path, *, force: bool = False) -> Path:
    """Write the default configuration file.

    Args:
        project_root: Project to initialize
        force: Overwrite an existing configuration

    Returns:
        Path of the written file

    Raises:
        ConfigurationError: If the file exists and ``force`` is not set, or
            it cannot be written
    """
    path = config_file_path(project_root)
    if path.exists() and not force:
        raise ConfigurationError(f"Configuration already exists: {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot write configuration file: {path}") from e
    return path
