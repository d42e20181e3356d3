"""Logging setup and the structured logger handed to workers and services."""
from __future__ import annotations

import logging
import sys
from typing import Any, Protocol

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredLogger(Protocol):
    def log(self, message: str, level: str = "info", meta: dict[str, Any] | None = None) -> None: ...


class StdlibStructuredLogger:
    """Adapter exposing ``log(message, level, meta)`` over a stdlib logger."""

    def __init__(self, name: str = "recipe_import") -> None:
        self._logger = logging.getLogger(name)

    def log(self, message: str, level: str = "info", meta: dict[str, Any] | None = None) -> None:
        resolved = _LEVELS.get(str(level).lower(), logging.INFO)
        if meta:
            self._logger.log(resolved, "%s %s", message, meta)
        else:
            self._logger.log(resolved, "%s", message)


def resolve_logger(logger: StructuredLogger | None, name: str = "recipe_import") -> StructuredLogger:
    """Return ``logger`` or the stdlib-backed fallback when none was supplied."""

    return logger if logger is not None else StdlibStructuredLogger(name)


def configure_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        root_level = logging.INFO

    for handler in list(root_logger.handlers):
        if getattr(handler, "_recipe_import", False):
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, "%Y-%m-%d %H:%M:%S"))
    handler._recipe_import = True  # type: ignore[attr-defined]
    root_logger.addHandler(handler)
    root_logger.setLevel(root_level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
