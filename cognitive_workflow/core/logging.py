"""Logging setup shared by the API, the CLI and the engine.

Request and run identifiers live in a context variable, so log lines emitted
by concurrent runs on one event loop each carry their own ids.
"""

import contextvars
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(request_id)s] %(message)s"

# Library loggers pinned regardless of the configured level.
THIRD_PARTY_LEVELS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
    "asyncio": logging.WARNING,
}

_logging_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "cognitive_workflow_logging_context", default={}
)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with context and extra fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Copies the current request/run context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _logging_context.get()
        fields = dict(getattr(record, "extra_fields", None) or {})
        for key, value in context.items():
            fields.setdefault(key, value)
        record.extra_fields = fields
        # Plain-text formats reference %(request_id)s directly.
        record.request_id = fields.get("request_id") or fields.get("http_request_id", "-")
        return True


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(WorkflowContextFilter())
    handler._cognitive_workflow = True
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Install console and optional rotating-file handlers on the root logger.

    Calling it again replaces the handlers a previous call installed and
    leaves any others (pytest's capture handler, for instance) alone.

    Args:
        level: Level name for the root and package loggers
        log_file: Path of a rotating log file, or None for console only
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Bytes before the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in [h for h in root_logger.handlers if getattr(h, "_cognitive_workflow", False)]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), formatter))

    if log_file:
        from logging.handlers import RotatingFileHandler

        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(
            _handler(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count), formatter)
        )

    for name, library_level in THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)
    logging.getLogger("cognitive_workflow").setLevel(numeric_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs) -> contextvars.Token:
    """Add fields to the current task's logging context.

    Returns a token for ``reset_logging_context``.
    """
    return _logging_context.set({**_logging_context.get(), **kwargs})


def reset_logging_context(token: contextvars.Token) -> None:
    _logging_context.reset(token)


def clear_logging_context():
    _logging_context.set({})


def get_logging_context() -> Dict[str, Any]:
    return dict(_logging_context.get())


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log ``message`` with ``context`` attached as structured fields."""
    logger.log(level, message, extra={"extra_fields": context})
