"""Structured logging for Parley."""

import logging
import sys
from typing import Callable

import structlog

from parley.config import get_config

LogSink = Callable[[str], None]

_log_sink: LogSink | None = None


class _SinkWriter:
    """File-like object handing complete log lines to a callback."""

    def __init__(self, sink: LogSink):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            line, self._pending = self._pending, ""
            self._sink(line)


def set_log_sink(sink: LogSink | None) -> None:
    """Send log lines to ``sink`` instead of stderr; takes effect on the next configure_logging()."""
    global _log_sink
    _log_sink = sink


def _renderer(fmt: str):
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    # Colors only make sense when lines land on a terminal.
    return structlog.dev.ConsoleRenderer(colors=_log_sink is None and sys.stderr.isatty())


def configure_logging(level: str | None = None) -> None:
    """Configure structlog from ``config.logging``; ``level`` overrides the configured level."""
    settings = get_config().logging
    log_level = logging.getLevelName((level or settings.level).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_SinkWriter(_log_sink) if _log_sink is not None else sys.stderr
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structlog logger, named after the calling module when given."""
    return structlog.get_logger(name) if name else structlog.get_logger()
