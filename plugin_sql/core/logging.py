"""
Structured logging configuration for plugin-sql.

Supports both human-readable (development) and JSON (staging/production) formats.

Modules log through ``logging.getLogger(__name__)``. Fields that describe the
unit of work (``plugin_name``, ``schema``) are bound with ``log_fields`` and
stamped onto every record emitted inside it, including records from the lock
and extension helpers that never see the plugin name. Bindings live in a
ContextVar, so concurrent migrations under asyncio.gather keep their own.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "asctime",
))

# Shown by the text formatter, in this order
_TEXT_FIELDS = ("plugin_name", "schema", "table")

_bound_fields: ContextVar[Dict[str, Any]] = ContextVar("plugin_sql_log_fields", default={})


@contextmanager
def log_fields(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Bind structured fields to every log record emitted in this context.

    Usage:
        with log_fields(plugin_name="plugin-weather"):
            logger.info("Starting migration")  # carries plugin_name
    """
    merged = {**_bound_fields.get(), **fields}
    token = _bound_fields.set(merged)
    try:
        yield merged
    finally:
        _bound_fields.reset(token)


def bound_fields() -> Dict[str, Any]:
    """Fields bound in the current context."""
    return dict(_bound_fields.get())


class BoundFieldsFilter(logging.Filter):
    """Copies bound fields onto records; explicit ``extra`` values win."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _bound_fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Output format compatible with log aggregators (ELK, CloudWatch, etc.)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(_extra_fields(record))

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter; appends plugin/schema/table when present."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in _TEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        if not context:
            return line
        # Keep the traceback (if any) below the context suffix
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(context)}]{sep}{tail}"


def configure_logging(level: str = "INFO", format_type: str = "text") -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: "json" for structured, "text" for human-readable
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(BoundFieldsFilter())
    if format_type.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # SQL echo is noisy; the migrator logs statements itself when verbose
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def configure_from_settings() -> None:
    """Configure logging from LOG_LEVEL / LOG_FORMAT."""
    from plugin_sql.core.config import Settings

    current = Settings()
    configure_logging(level=current.LOG_LEVEL, format_type=current.LOG_FORMAT)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name, typically __name__
    """
    return logging.getLogger(name)
