"""Tests for runtime configuration."""

from __future__ import annotations

import json

import pytest

from reloadkit.config import RuntimeConfig
from reloadkit.errors import ConfigError


class TestRuntimeConfig:
    """Tests for RuntimeConfig."""

    def test_defaults(self):
        """Test default values."""
        config = RuntimeConfig()

        assert config.max_history == 1000
        assert config.poll_interval == 1.0
        assert config.watch_patterns == ["*.py"]
        assert config.log_level == "INFO"
        assert config.wrap_load_errors is True

    def test_from_environment(self, monkeypatch):
        """Test RELOADKIT_* variables override defaults."""
        monkeypatch.setenv("RELOADKIT_MAX_HISTORY", "50")
        monkeypatch.setenv("RELOADKIT_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("RELOADKIT_WATCH_PATTERNS", "*.py, *.toml ,")
        monkeypatch.setenv("RELOADKIT_WRAP_LOAD_ERRORS", "no")

        config = RuntimeConfig.from_environment()

        assert config.max_history == 50
        assert config.poll_interval == 0.5
        assert config.watch_patterns == ["*.py", "*.toml"]
        assert config.wrap_load_errors is False
        assert config.log_level == "INFO"

    def test_environment_over_base(self, monkeypatch):
        """Test unset variables keep the base values."""
        monkeypatch.setenv("RELOADKIT_LOG_LEVEL", "DEBUG")
        base = RuntimeConfig(max_history=10, log_level="WARNING")

        config = RuntimeConfig.from_environment(base)

        assert config.max_history == 10
        assert config.log_level == "DEBUG"

    def test_merge_dict_ignores_unknown(self):
        """Test merging a dict skips unknown keys."""
        config = RuntimeConfig().merge({"max_history": 5, "colour": "blue"})

        assert config.max_history == 5
        assert not hasattr(config, "colour")

    def test_merge_config(self):
        """Test merging another config takes all its values."""
        other = RuntimeConfig(poll_interval=2.0)

        assert RuntimeConfig(max_history=5).merge(other) == other


class TestConfigFiles:
    """Tests for RuntimeConfig.from_file."""

    def test_yaml(self, tmp_path):
        """Test YAML files."""
        path = tmp_path / "reloadkit.yaml"
        path.write_text("max_history: 20\nwatch_patterns:\n  - '*.py'\n  - '*.yaml'\n")

        config = RuntimeConfig.from_file(path)

        assert config.max_history == 20
        assert config.watch_patterns == ["*.py", "*.yaml"]

    def test_empty_yaml(self, tmp_path):
        """Test an empty YAML file gives the defaults."""
        path = tmp_path / "reloadkit.yml"
        path.write_text("")

        assert RuntimeConfig.from_file(path) == RuntimeConfig()

    def test_json_with_section(self, tmp_path):
        """Test a top-level reloadkit section is used."""
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"reloadkit": {"poll_interval": 0.1}, "other": 1}))

        assert RuntimeConfig.from_file(path).poll_interval == 0.1

    def test_pyproject(self, tmp_path):
        """Test settings under [tool.reloadkit]."""
        path = tmp_path / "pyproject.toml"
        path.write_text(
            '[project]\nname = "demo"\n\n'
            "[tool.reloadkit]\n"
            'log_level = "DEBUG"\n'
            "wrap_load_errors = false\n"
        )

        config = RuntimeConfig.from_file(path)

        assert config.log_level == "DEBUG"
        assert config.wrap_load_errors is False

    def test_missing_file(self, tmp_path):
        """Test a missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            RuntimeConfig.from_file(tmp_path / "nope.yaml")

    def test_unsupported_format(self, tmp_path):
        """Test unknown extensions are refused."""
        path = tmp_path / "reloadkit.ini"
        path.write_text("[reloadkit]\n")

        with pytest.raises(ConfigError, match="Unsupported"):
            RuntimeConfig.from_file(path)

    def test_invalid_content(self, tmp_path):
        """Test parse errors become ConfigError."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigError):
            RuntimeConfig.from_file(path)

    def test_non_mapping(self, tmp_path):
        """Test a file that is not a mapping is refused."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            RuntimeConfig.from_file(path)
