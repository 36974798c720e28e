"""Logging configuration with JSON formatting and lab context.

Every record emitted while a lab is being provisioned or cleaned up carries
the lab ID from a context variable, so interleaved output from concurrent
pipeline tasks can be told apart.
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from labby.config import settings

# Lab ID of the pipeline or cleanup currently running in this context
lab_id_var: ContextVar[str | None] = ContextVar("lab_id", default=None)

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


def get_lab_id() -> str | None:
    """Get the lab ID bound to the current context."""
    return lab_id_var.get()


def set_lab_id(lab_id: str | None) -> None:
    """Bind a lab ID to the current context."""
    lab_id_var.set(lab_id)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Emits timestamp, level, logger, message, lab_id (when bound),
    exception text and any extra fields passed to the logger.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        lab_id = get_lab_id()
        if lab_id:
            log_entry["lab_id"] = lab_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS:
                continue
            try:
                json.dumps(value)
                extra[key] = value
            except (TypeError, ValueError):
                extra[key] = str(value)

        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


class TextFormatter(logging.Formatter):
    """Human-readable formatter: [timestamp] LEVEL [lab] logger: message"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        lab_id = get_lab_id()
        lab_part = f" [{lab_id}]" if lab_id else ""

        message = f"[{timestamp}] {record.levelname:8}{lab_part} {record.name}: {record.getMessage()}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def setup_logging() -> None:
    """Configure the root logger from settings.

    Existing root handlers are replaced by a single stdout handler using
    the JSON or text formatter.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: format={settings.log_format}, level={settings.log_level}")
