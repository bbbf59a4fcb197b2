"""Runtime configuration."""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from reloadkit.errors import ConfigError


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class RuntimeConfig:
    """Configuration for :class:`reloadkit.runtime.Runtime`.

    Attributes:
        max_history: Lifecycle transitions kept by the runner.
        poll_interval: Seconds between file-watcher polls.
        watch_patterns: Glob patterns the file watcher tracks.
        log_level: Level used when the CLI configures logging.
        wrap_load_errors: Wrap foreign exceptions from loaders and mount
            hooks in :class:`~reloadkit.errors.LoadError`.
    """

    max_history: int = 1000
    poll_interval: float = 1.0
    watch_patterns: list[str] = field(default_factory=lambda: ["*.py"])
    log_level: str = "INFO"
    wrap_load_errors: bool = True

    @classmethod
    def from_environment(cls, base: "RuntimeConfig | None" = None) -> "RuntimeConfig":
        """Load configuration from ``RELOADKIT_*`` environment variables.

        Args:
            base: Values for variables that are not set (defaults if omitted).
        """
        config = base or cls()
        overrides: dict[str, Any] = {}

        if "RELOADKIT_MAX_HISTORY" in os.environ:
            overrides["max_history"] = int(os.environ["RELOADKIT_MAX_HISTORY"])
        if "RELOADKIT_POLL_INTERVAL" in os.environ:
            overrides["poll_interval"] = float(os.environ["RELOADKIT_POLL_INTERVAL"])
        if "RELOADKIT_WATCH_PATTERNS" in os.environ:
            overrides["watch_patterns"] = [
                p.strip()
                for p in os.environ["RELOADKIT_WATCH_PATTERNS"].split(",")
                if p.strip()
            ]
        if "RELOADKIT_LOG_LEVEL" in os.environ:
            overrides["log_level"] = os.environ["RELOADKIT_LOG_LEVEL"]
        if "RELOADKIT_WRAP_LOAD_ERRORS" in os.environ:
            overrides["wrap_load_errors"] = _env_bool(
                os.environ["RELOADKIT_WRAP_LOAD_ERRORS"]
            )

        return replace(config, **overrides)

    def merge(self, other: "RuntimeConfig | dict[str, Any]") -> "RuntimeConfig":
        """Merge with another config, other takes precedence.

        Args:
            other: Either a RuntimeConfig or a dict of field values. Unknown
                keys in a dict are ignored.
        """
        if isinstance(other, RuntimeConfig):
            other = {f.name: getattr(other, f.name) for f in fields(other)}
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in other.items() if k in known})

    @classmethod
    def from_file(cls, path: str | Path) -> "RuntimeConfig":
        """Load configuration from a YAML, JSON or TOML file.

        A top-level ``reloadkit`` table is used when present, so the
        settings can live in a shared file such as ``pyproject.toml``
        (under ``[tool.reloadkit]``).

        Raises:
            ConfigError: If the file is missing, unreadable or has an
                unsupported format.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()
        try:
            content = path.read_text(encoding="utf-8")
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif suffix == ".json":
                data = json.loads(content)
            elif suffix == ".toml":
                data = tomllib.loads(content)
            else:
                raise ConfigError(f"Unsupported config format: {suffix}")
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a mapping")
        data = data.get("tool", data)
        data = data.get("reloadkit", data)
        return cls().merge(data)
