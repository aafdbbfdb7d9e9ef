"""Structured logging configuration for zsonar.

Loggers are built from an explicit :class:`LogConfig` instead of mutating
process-wide structlog state, so every command (and every test) owns its
logging setup.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, TextIO

import structlog

LEVELS: Dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}


def parse_level(name: str) -> int:
    """Map a verbosity name to a logging level."""
    try:
        return LEVELS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"unknown log level {name!r}") from None


def _is_tty(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


@dataclass
class LogConfig:
    """Logging configuration handed to the loops and the broker."""

    level: int = logging.INFO
    console: bool = False
    stream: TextIO = field(default_factory=lambda: sys.stderr)

    @classmethod
    def from_names(cls, verbosity: str, console: bool = False, **kwargs: Any) -> LogConfig:
        return cls(level=parse_level(verbosity), console=console, **kwargs)

    def processors(self) -> List[Any]:
        processors: List[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
        ]
        if self.console:
            processors.append(structlog.dev.ConsoleRenderer(colors=_is_tty(self.stream)))
        else:
            processors.extend([
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ])
        return processors

    def get_logger(self, name: str, **initial_values: Any) -> structlog.typing.FilteringBoundLogger:
        """Get a structured logger bound to this configuration."""
        return structlog.wrap_logger(
            structlog.PrintLogger(file=self.stream),
            processors=self.processors(),
            wrapper_class=structlog.make_filtering_bound_logger(self.level),
            context_class=dict,
            cache_logger_on_first_use=False,
        ).bind(logger=name, **initial_values)


_logger = LogConfig().get_logger("zsonar")
