"""Logging bootstrap for the chat engine.

Engine modules log through ``logging.getLogger(__name__)`` and attach their
structured fields with ``extra=``. This module decides how those records are
rendered: one JSON object per line through structlog's ``ProcessorFormatter``,
or a plain text line when structured output is turned off.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
import os
from pathlib import Path
from typing import Any

import structlog

APP_LOGGER_PREFIX = "prep_chat"
QUIET_LIBRARIES = ("httpx", "httpcore", "ollama")

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_CONSOLE_FLOOR = logging.WARNING

LOGGER = logging.getLogger(__name__)


def _timestamper() -> structlog.processors.TimeStamper:
    return structlog.processors.TimeStamper(fmt="iso", utc=True)


def app_only_filter(record: logging.LogRecord) -> bool:
    """Keep stderr output limited to this package's loggers."""
    return record.name.startswith(APP_LOGGER_PREFIX)


def build_formatter(structured: bool) -> logging.Formatter:
    """Return the formatter shared by every handler the engine installs.

    Stdlib records carry the session's ``extra`` fields (``conversation_id``,
    ``phase``, ``error_kind``...), which ``ExtraAdder`` lifts into the JSON.
    """
    if not structured:
        return logging.Formatter(_PLAIN_FORMAT)
    renderer = structlog.processors.JSONRenderer(ensure_ascii=False, separators=(",", ":"))
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            _timestamper(),
        ],
    )


def _route_structlog_through_stdlib() -> None:
    # structlog.get_logger() callers end up on the same root handlers.
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _timestamper(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _restrict_to_owner(path: Path) -> None:
    """Restrict the log file to its owner on POSIX."""
    if os.name != "posix":
        return
    try:
        path.chmod(0o600)
    except OSError:
        LOGGER.warning(
            "logging.file.permissions_failed",
            extra={"event": "logging.file.permissions_failed", "path": str(path)},
        )


def _file_handler(location: Any, formatter: logging.Formatter, level: int) -> logging.Handler:
    path = Path(str(location)).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    _restrict_to_owner(path)
    return handler


def _console_handler(formatter: logging.Formatter, level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(max(level, _CONSOLE_FLOOR))
    handler.setFormatter(formatter)
    handler.addFilter(app_only_filter)
    return handler


def configure_logging(logging_config: Mapping[str, Any]) -> None:
    """Install root handlers from the ``[logging]`` config section.

    The root logger runs at the configured level. stderr only shows this
    package's warnings and errors, while the optional log file receives
    everything at the configured level.
    """
    level = getattr(logging, str(logging_config.get("level", "INFO")).upper(), logging.INFO)
    structured = bool(logging_config.get("structured", True))

    if structured:
        _route_structlog_through_stdlib()
    formatter = build_formatter(structured)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(_console_handler(formatter, level))

    log_file_path = logging_config.get("log_file_path")
    if logging_config.get("log_to_file") and log_file_path:
        root.addHandler(_file_handler(log_file_path, formatter, level))

    for name in QUIET_LIBRARIES:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.WARNING)
        noisy.propagate = True
