"""Structured logging configuration.

Every line carries the service name and, inside a workflow run, the
correlation ID that ties it to the alert rows the run wrote.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from alerting.config import settings

# Set once per workflow invocation (incident created, reminder tick, ...)
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Libraries whose INFO output drowns the engine's own lines
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "apscheduler")


def new_correlation_id() -> str:
    """Start a new correlation scope for a workflow run.

    Returns:
        The generated correlation ID.
    """
    correlation_id = uuid.uuid4().hex
    correlation_id_ctx.set(correlation_id)
    return correlation_id


class _ServiceFormatter(logging.Formatter):
    def __init__(self, service_name: str = "oncall-alerting"):
        super().__init__()
        self.service_name = service_name

    @staticmethod
    def _created(record: logging.LogRecord) -> datetime:
        return datetime.fromtimestamp(record.created, tz=timezone.utc)

    @staticmethod
    def _extra(record: logging.LogRecord) -> dict[str, Any]:
        return getattr(record, "extra_fields", None) or {}


class JsonFormatter(_ServiceFormatter):
    """One JSON object per line.

    Keys: ``timestamp`` (ISO 8601, UTC), ``level``, ``service``,
    ``message``, ``logger``, ``correlation_id`` when a run is active,
    the record's structured fields, ``exception`` when there is a
    traceback, and ``location`` for ERROR and above.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self._created(record).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "message": record.getMessage(),
            "logger": record.name,
        }

        correlation_id = correlation_id_ctx.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        entry.update(self._extra(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if record.levelno >= logging.ERROR:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        # Ids and datetimes in structured fields are written via str()
        return json.dumps(entry, default=str)


class TextFormatter(_ServiceFormatter):
    """Readable single-line output for local runs.

    ``2024-05-01 12:00:00 - service - LEVEL - [correlation] - message k=v``
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            self._created(record).strftime("%Y-%m-%d %H:%M:%S"),
            self.service_name,
            record.levelname,
            f"[{correlation_id_ctx.get() or '-'}]",
            record.getMessage(),
        ]
        line = " - ".join(parts)

        fields = self._extra(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


def setup_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    service_name: str | None = None,
) -> None:
    """Route all logging to stdout through one structured handler.

    Arguments left as ``None`` come from settings (``log_format``,
    ``log_level``, ``service_name``). Unknown levels fall back to INFO.
    """
    log_format = log_format or settings.log_format
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    service_name = service_name or settings.service_name

    formatter_cls = JsonFormatter if log_format.lower() == "json" else TextFormatter
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter_cls(service_name=service_name))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class StructuredLogger:
    """Logger wrapper that supports structured extra fields.

    Fields passed to :meth:`bind` are attached to every line the returned
    logger writes; per-call fields win on key clashes.
    """

    def __init__(self, name: str, context: dict[str, Any] | None = None):
        self._logger = logging.getLogger(name)
        self._context = dict(context or {})

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger that adds ``fields`` to every record."""
        return StructuredLogger(self._logger.name, {**self._context, **fields})

    def _fields(self, extra_fields: dict[str, Any]) -> dict[str, Any] | None:
        merged = {**self._context, **extra_fields}
        return merged or None

    def _log(self, level: int, msg: str, extra_fields: dict[str, Any]) -> None:
        fields = self._fields(extra_fields)
        record_extra = {"extra_fields": fields} if fields else {}
        self._logger.log(level, msg, extra=record_extra)

    def debug(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.DEBUG, msg, extra_fields)

    def info(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.INFO, msg, extra_fields)

    def warning(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.WARNING, msg, extra_fields)

    def error(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.ERROR, msg, extra_fields)

    def exception(self, msg: str, **extra_fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        fields = self._fields(extra_fields)
        record_extra = {"extra_fields": fields} if fields else {}
        self._logger.exception(msg, extra=record_extra)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(name)
