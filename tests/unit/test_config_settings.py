"""Tests for harness_workflow/config/settings.py.

Tests cover:
- Defaults and the generated default configuration file
- YAML loading and environment variable interpolation
- Environment overrides with the HARNESS_ prefix
- The not-installed condition
- Engine configuration overrides
"""

from pathlib import Path

import pytest

from harness_workflow.config.settings import (
    HarnessSettings,
    WorkflowSettings,
    is_installed,
    load_project_settings,
    write_default_config,
)
from harness_workflow.enums import GuardLevel
from harness_workflow.exceptions import ConfigurationError, HarnessNotInstalledError


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    return tmp_path / "config.yaml"


class TestDefaults:
    def test_workflow_defaults(self):
        settings = WorkflowSettings()

        assert settings.workflows_directory == ".harness/workflows"
        assert settings.guard_level == GuardLevel.WARN
        assert settings.max_retries == 3
        assert settings.list_limit == 10

    def test_default_file_loads(self, project_root: Path):
        settings = load_project_settings(project_root)

        assert settings.modules == ["core", "quality"]
        assert settings.workflow.sync_to_external is True
        assert settings.external.memory_directory == ".omc"
        assert settings.external.max_outcome_notes == 5

    def test_empty_file_means_defaults(self, config_file: Path):
        config_file.write_text("")

        settings = HarnessSettings.from_yaml(config_file)

        assert settings.modules == ["core"]
        assert settings.workflows_dir == Path(".harness/workflows")


class TestFromYaml:
    def test_missing_file(self, config_file: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            HarnessSettings.from_yaml(config_file)

    def test_invalid_yaml(self, config_file: Path):
        config_file.write_text("workflow: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            HarnessSettings.from_yaml(config_file)

    def test_undecodable_file(self, config_file: Path):
        config_file.write_bytes(b"modules:\n  - \xff\xfe\n")

        with pytest.raises(ConfigurationError, match="Cannot read"):
            HarnessSettings.from_yaml(config_file)

    def test_scalar_document(self, config_file: Path):
        config_file.write_text("- core\n- quality\n")

        with pytest.raises(ConfigurationError, match="YAML object"):
            HarnessSettings.from_yaml(config_file)

    def test_out_of_range_retries(self, config_file: Path):
        config_file.write_text("workflow:\n  max_retries: 11\n")

        with pytest.raises(ConfigurationError, match="Failed to validate"):
            HarnessSettings.from_yaml(config_file)

    def test_unknown_guard_level(self, config_file: Path):
        config_file.write_text("workflow:\n  guard_level: strict\n")

        with pytest.raises(ConfigurationError):
            HarnessSettings.from_yaml(config_file)


class TestInterpolation:
    def test_env_var_and_default(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("RETRY_BUDGET", "7")
        monkeypatch.delenv("STATE_DIR_OVERRIDE", raising=False)
        config_file.write_text(
            "workflow:\n"
            "  max_retries: ${RETRY_BUDGET}\n"
            "  workflows_directory: ${STATE_DIR_OVERRIDE:-.state/workflows}\n"
        )

        settings = HarnessSettings.from_yaml(config_file)

        assert settings.workflow.max_retries == 7
        assert settings.workflow.workflows_directory == ".state/workflows"

    def test_missing_required_var(self, config_file: Path, monkeypatch):
        monkeypatch.delenv("UNSET_MODULE_NAME", raising=False)
        config_file.write_text("modules:\n  - ${UNSET_MODULE_NAME}\n")

        with pytest.raises(ConfigurationError, match="UNSET_MODULE_NAME"):
            HarnessSettings.from_yaml(config_file)

    def test_comment_lines_untouched(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        content = "# use ${NOT_SET_ANYWHERE} here\nmodules: []\n"

        assert HarnessSettings._interpolate_env_vars(content) == content


class TestEnvironmentOverrides:
    def test_env_beats_file(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("HARNESS_WORKFLOW__MAX_RETRIES", "5")
        config_file.write_text("workflow:\n  max_retries: 2\n  auto_dispatch: true\n")

        settings = HarnessSettings.from_yaml(config_file)

        assert settings.workflow.max_retries == 5
        assert settings.workflow.auto_dispatch is True


class TestEngineConfig:
    def test_file_values_flow_into_engine_config(self, config_file: Path):
        config_file.write_text("workflow:\n  guard_level: block\n  max_retries: 1\n  history_enabled: false\n")

        config = HarnessSettings.from_yaml(config_file).engine_config()

        assert config.guard_level == GuardLevel.BLOCK
        assert config.max_retries == 1
        assert config.history_enabled is False

    def test_overrides_win_and_none_is_ignored(self):
        config = HarnessSettings().engine_config(guard_level="off", auto_dispatch=None, team_mode="ralph")

        assert config.guard_level == GuardLevel.OFF
        assert config.auto_dispatch is False
        assert config.team_mode == "ralph"


class TestInstallation:
    def test_not_installed(self, tmp_path: Path):
        assert is_installed(tmp_path) is False

        with pytest.raises(HarnessNotInstalledError, match="harness init") as exc_info:
            load_project_settings(tmp_path)
        assert exc_info.value.project_root == str(tmp_path)

    def test_write_default_config(self, tmp_path: Path):
        path = write_default_config(tmp_path)

        assert path == tmp_path / ".harness" / "config.yaml"
        assert is_installed(tmp_path)

    def test_write_refuses_to_overwrite(self, project_root: Path):
        with pytest.raises(ConfigurationError, match="already exists"):
            write_default_config(project_root)

        (project_root / ".harness" / "config.yaml").write_text("modules: [core]\n")
        write_default_config(project_root, force=True)
        assert load_project_settings(project_root).modules == ["core", "quality"]
