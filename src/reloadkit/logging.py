"""Logging setup for reloadkit.

Modules log through ``logging.getLogger(__name__)``; this module only
decides where those records go. Configuration comes from code or from
``RELOADKIT_LOG_LEVEL`` / ``RELOADKIT_LOG_FORMAT``.

Usage:
    >>> from reloadkit.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from typing import Any, TextIO

ROOT_LOGGER = "reloadkit"


@dataclass
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Level name for the ``reloadkit`` logger.
        format: ``console`` or ``json``.
        stream: Destination stream (defaults to stderr).
    """

    level: str = "INFO"
    format: str = "console"
    stream: TextIO | None = None

    @classmethod
    def from_environment(cls) -> "LogConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("RELOADKIT_LOG_LEVEL", "INFO"),
            format=os.getenv("RELOADKIT_LOG_FORMAT", "console"),
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        component = getattr(record, "component", None)
        if component is not None:
            payload["component"] = component
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


# =============================================================================
# Global Logger Management
# =============================================================================

_handler: logging.Handler | None = None
_lock = threading.Lock()


def configure_logging(
    *,
    level: str | None = None,
    format: str | None = None,
    config: LogConfig | None = None,
) -> logging.Logger:
    """Configure the ``reloadkit`` logger.

    Calling this again replaces the previously installed handler.

    Args:
        level: Log level name; overrides ``config.level``.
        format: Output format; overrides ``config.format``.
        config: Base configuration (environment if omitted).

    Returns:
        The package root logger.
    """
    global _handler

    config = config or LogConfig.from_environment()
    level_name = (level or config.level).upper()
    fmt = format or config.format

    root = logging.getLogger(ROOT_LOGGER)
    with _lock:
        if _handler is not None:
            root.removeHandler(_handler)

        handler = logging.StreamHandler(config.stream or sys.stderr)
        if fmt == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(logging.Formatter(
                "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            ))
        root.addHandler(handler)
        root.setLevel(getattr(logging, level_name, logging.INFO))
        _handler = handler

    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``reloadkit`` namespace.

    Args:
        name: Logger name (usually ``__name__``).
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def reset_logging() -> None:
    """Remove the handler installed by :func:`configure_logging`."""
    global _handler

    with _lock:
        if _handler is not None:
            logging.getLogger(ROOT_LOGGER).removeHandler(_handler)
            _handler = None
        logging.getLogger(ROOT_LOGGER).setLevel(logging.NOTSET)
