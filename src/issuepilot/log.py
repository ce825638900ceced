"""Structured leveled logging for the engine.

The engine talks to an :class:`EngineLogger` rather than to
:mod:`logging` directly, so the same calls can be routed to the standard
library, to a transport's log stream, or to both.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class EngineLogger(Protocol):
    """Four leveled methods taking a message and optional context."""

    def debug(self, message: str, context: dict[str, Any] | None = None) -> None: ...

    def info(self, message: str, context: dict[str, Any] | None = None) -> None: ...

    def warn(self, message: str, context: dict[str, Any] | None = None) -> None: ...

    def error(self, message: str, context: dict[str, Any] | None = None) -> None: ...


def format_context(context: dict[str, Any] | None) -> str:
    """Render *context* as ``key=value`` pairs in insertion order."""
    if not context:
        return ""
    return " ".join(f"{key}={value!r}" for key, value in context.items())


class StdlibEngineLogger:
    """Adapts a :class:`logging.Logger` to :class:`EngineLogger`."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("issuepilot.engine")

    def _log(self, level: int, message: str, context: dict[str, Any] | None) -> None:
        rendered = format_context(context)
        if rendered:
            self._logger.log(level, "%s %s", message, rendered)
        else:
            self._logger.log(level, "%s", message)

    def debug(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(logging.INFO, message, context)

    def warn(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(logging.WARNING, message, context)

    def error(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(logging.ERROR, message, context)


class TeeLogger:
    """Forwards every call to each of several loggers, in order."""

    def __init__(self, *loggers: EngineLogger) -> None:
        self._loggers = loggers

    def debug(self, message: str, context: dict[str, Any] | None = None) -> None:
        for target in self._loggers:
            target.debug(message, context)

    def info(self, message: str, context: dict[str, Any] | None = None) -> None:
        for target in self._loggers:
            target.info(message, context)

    def warn(self, message: str, context: dict[str, Any] | None = None) -> None:
        for target in self._loggers:
            target.warn(message, context)

    def error(self, message: str, context: dict[str, Any] | None = None) -> None:
        for target in self._loggers:
            target.error(message, context)
