"""
Tests for installapplications.config.loader module.

Tests settings loading and merging including:
- Built-in defaults
- Machine settings -> explicit settings file -> environment layering
- Deep merge (dicts merged, lists replaced)
- Relative path resolution against the settings file
- Validation errors
"""

from __future__ import annotations

from pathlib import Path

import pytest

from installapplications.config import load_settings
from installapplications.config.loader import _deep_merge_dicts
from installapplications.exceptions import ConfigError

pytestmark = pytest.mark.unit


@pytest.fixture
def no_machine(tmp_test_dir: Path) -> Path:
    """Path of a machine settings file that does not exist."""
    return tmp_test_dir / "machine" / "config.yaml"


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self, no_machine, logger):
        """Test that defaults load with no files or environment."""
        settings = load_settings(machine_path=no_machine, environ={}, logger=logger)

        assert settings.required_failure_policy == "continue"
        assert settings.gate_userland_on_setup_failure is False
        assert settings.status_max_age_hours == 24.0
        assert settings.package_timeout == 3600
        assert settings.service_name == "InstallApplicationsService"
        assert settings.service_command is None
        assert settings.wait_for_user_session is False
        assert settings.user_session_timeout == 0.0
        assert settings.sources == ()
        assert settings.cache_dir.name in ("cache", "InstallApplications")


class TestLayering:
    """Tests for settings layers."""

    def test_explicit_file(self, create_yaml_file, no_machine):
        """Test that values from the explicit settings file apply."""
        path = create_yaml_file(
            "site.yaml",
            {
                "required_failure_policy": "abort-run",
                "package_timeout": 900,
                "gate_userland_on_setup_failure": True,
                "service_command": "C:\\Tools\\run.cmd",
            },
        )

        settings = load_settings(path, machine_path=no_machine, environ={})

        assert settings.required_failure_policy == "abort-run"
        assert settings.package_timeout == 900
        assert settings.gate_userland_on_setup_failure is True
        assert settings.service_command == ("C:\\Tools\\run.cmd",)
        assert settings.sources == (path.resolve(),)

    def test_user_session_settings(self, create_yaml_file, no_machine):
        """Test the user session wait settings."""
        path = create_yaml_file(
            "site.yaml",
            {
                "wait_for_user_session": True,
                "user_session_timeout": 1800,
                "user_session_poll_interval": 15,
            },
        )

        settings = load_settings(path, machine_path=no_machine, environ={})

        assert settings.wait_for_user_session is True
        assert settings.user_session_timeout == 1800.0
        assert settings.user_session_poll_interval == 15.0

    def test_explicit_overrides_machine(self, create_yaml_file):
        """Test that the explicit file wins over machine settings."""
        machine = create_yaml_file(
            "machine/config.yaml", {"package_timeout": 100, "http_timeout": 5}
        )
        site = create_yaml_file("site.yaml", {"package_timeout": 200})

        settings = load_settings(site, machine_path=machine, environ={})

        assert settings.package_timeout == 200
        assert settings.http_timeout == 5
        assert settings.sources == (machine, site.resolve())

    def test_config_from_environment(self, create_yaml_file, no_machine):
        """Test that INSTALLAPPS_CONFIG names the settings file."""
        path = create_yaml_file("env.yaml", {"http_timeout": 7})

        settings = load_settings(
            machine_path=no_machine, environ={"INSTALLAPPS_CONFIG": str(path)}
        )

        assert settings.http_timeout == 7

    def test_environment_overrides(self, create_yaml_file, no_machine, tmp_test_dir):
        """Test that INSTALLAPPS_* variables override file values."""
        path = create_yaml_file("site.yaml", {"required_failure_policy": "abort-run"})
        environ = {
            "INSTALLAPPS_CACHE_DIR": str(tmp_test_dir / "env-cache"),
            "INSTALLAPPS_FAILURE_POLICY": "abort-phase",
        }

        settings = load_settings(path, machine_path=no_machine, environ=environ)

        assert settings.cache_dir == tmp_test_dir / "env-cache"
        assert settings.required_failure_policy == "abort-phase"

    def test_relative_paths_resolve_against_file(self, create_yaml_file, no_machine):
        """Test that relative paths are relative to the settings file."""
        path = create_yaml_file(
            "conf/site.yaml", {"cache_dir": "cache", "log_dir": "../logs"}
        )

        settings = load_settings(path, machine_path=no_machine, environ={})

        assert settings.cache_dir == path.resolve().parent / "cache"
        assert settings.log_dir == path.resolve().parent / ".." / "logs"

    def test_empty_file(self, tmp_test_dir, no_machine):
        """Test that an empty settings file is allowed."""
        path = tmp_test_dir / "empty.yaml"
        path.write_text("")

        settings = load_settings(path, machine_path=no_machine, environ={})

        assert settings.required_failure_policy == "continue"


class TestMerge:
    """Tests for _deep_merge_dicts."""

    def test_dicts_merge_lists_replace(self):
        """Test dict deep merge and list replacement."""
        base = {"a": {"x": 1, "y": 2}, "items": [1, 2], "s": "old"}
        overlay = {"a": {"y": 3}, "items": [9], "s": "new"}

        merged = _deep_merge_dicts(base, overlay)

        assert merged == {"a": {"x": 1, "y": 3}, "items": [9], "s": "new"}
        assert base["a"] == {"x": 1, "y": 2}


class TestErrors:
    """Tests for invalid settings."""

    def test_missing_explicit_file(self, tmp_test_dir, no_machine):
        """Test that a missing explicit file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_test_dir / "nope.yaml", machine_path=no_machine, environ={})

    def test_invalid_yaml(self, tmp_test_dir, no_machine):
        """Test that invalid YAML raises ConfigError."""
        path = tmp_test_dir / "bad.yaml"
        path.write_text("key: [unclosed\n")

        with pytest.raises(ConfigError, match="Error parsing YAML"):
            load_settings(path, machine_path=no_machine, environ={})

    def test_non_mapping(self, tmp_test_dir, no_machine):
        """Test that a list document raises ConfigError."""
        path = tmp_test_dir / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path, machine_path=no_machine, environ={})

    def test_invalid_policy(self, no_machine):
        """Test that an unknown failure policy raises ConfigError."""
        with pytest.raises(ConfigError, match="required_failure_policy"):
            load_settings(
                machine_path=no_machine,
                environ={"INSTALLAPPS_FAILURE_POLICY": "explode"},
            )

    @pytest.mark.parametrize("value", ["soon", -5, True])
    def test_invalid_number(self, create_yaml_file, no_machine, value):
        """Test that non-numeric or negative numbers raise ConfigError."""
        path = create_yaml_file("site.yaml", {"package_timeout": value})

        with pytest.raises(ConfigError, match="package_timeout"):
            load_settings(path, machine_path=no_machine, environ={})

    def test_invalid_flag(self, create_yaml_file, no_machine):
        """Test that a non-boolean gate flag raises ConfigError."""
        path = create_yaml_file("site.yaml", {"gate_userland_on_setup_failure": "maybe"})

        with pytest.raises(ConfigError, match="gate_userland_on_setup_failure"):
            load_settings(path, machine_path=no_machine, environ={})
