"""structlog setup shared by the interactive CLI and the heartbeat entry point."""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from shellpilot.config import LoggingConfig

_log_file: TextIO | None = None


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _close_log_file() -> None:
    global _log_file
    if _log_file is not None and not _log_file.closed:
        _log_file.close()
    _log_file = None


def _open_log_file(path: str) -> TextIO:
    global _log_file
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    _log_file = target.open("a", encoding="utf-8", buffering=1)
    return _log_file


def configure_logging(settings: LoggingConfig | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Lines go to ``stream`` when given, else to ``logging.file`` (appended,
    always JSON, for heartbeat runs under cron), else to stderr.

    Args:
        settings: Logging section; defaults apply when omitted
        stream: Explicit destination, mainly for tests
    """
    settings = settings or LoggingConfig()
    _close_log_file()
    as_json = settings.format == "json"
    if stream is None and settings.file:
        stream = _open_log_file(settings.file)
        as_json = True
    out = stream or sys.stderr

    renderer = (
        structlog.processors.JSONRenderer()
        if as_json
        else structlog.dev.ConsoleRenderer(colors=out.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level(settings.level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        # module loggers are created at import, before the config is known
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a logger for ``name`` (usually ``__name__``)."""
    return structlog.get_logger(name) if name else structlog.get_logger()
