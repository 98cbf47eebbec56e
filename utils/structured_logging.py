"""Logging setup: text or JSON lines, request trace ids, secret masking."""
from __future__ import annotations

import json
import logging
import logging.config
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from utils.logging_utils import install_sensitive_filter


TRACE_ID_VAR: ContextVar[str] = ContextVar("watchdog_trace_id", default="-")

TEXT_FORMAT = "%(asctime)s | %(levelname)s | watchdog | %(name)s | %(trace_id)s | %(message)s"

_RESERVED = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "trace_id",
    "message",
    "asctime",
}


class TraceIdFilter(logging.Filter):
    """Inject the active trace ID from the contextvar into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = TRACE_ID_VAR.get("-") or "-"
        return True


class JsonLogFormatter(logging.Formatter):
    """Serialise log records as structured JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        base: Dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": getattr(record, "trace_id", TRACE_ID_VAR.get("-")) or "-",
            "module": record.module,
            "line": record.lineno,
            "process": record.process,
        }

        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            base["stack"] = self.formatStack(record.stack_info)

        extras: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            try:
                json.dumps(value)
                extras[key] = value
            except TypeError:
                extras[key] = repr(value)

        if extras:
            base["context"] = extras

        return json.dumps(base, ensure_ascii=False)


def configure_structured_logging(*, level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure the root logger.

    ``LOG_LEVEL`` picks the level (INFO by default) and ``LOG_FORMAT`` picks
    between human readable ``text`` lines and ``json`` objects.
    """

    desired_level = str(level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, desired_level, logging.INFO)
    desired_fmt = str(fmt or os.getenv("LOG_FORMAT", "text")).strip().lower()
    formatter = "json" if desired_fmt == "json" else "text"

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "trace": {
                "()": "utils.structured_logging.TraceIdFilter",
            },
            "mask": {
                "()": "utils.logging_utils.SensitiveDataFilter",
            },
        },
        "formatters": {
            "json": {
                "()": "utils.structured_logging.JsonLogFormatter",
            },
            "text": {
                "format": TEXT_FORMAT,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
                "level": numeric_level,
                "filters": ["trace", "mask"],
                "formatter": formatter,
            }
        },
        "root": {
            "level": numeric_level,
            "handlers": ["default"],
        },
    }

    logging.config.dictConfig(log_config)


def get_logger(name: str, *, mask_fields: Iterable[str] = ()) -> logging.Logger:
    """Return a module logger with secret masking installed."""

    logger = logging.getLogger(name)
    install_sensitive_filter(logger, fields=mask_fields)
    return logger


def set_trace_id(trace_id: str):
    return TRACE_ID_VAR.set(trace_id)


def reset_trace_id(token) -> None:
    TRACE_ID_VAR.reset(token)


def current_trace_id() -> str:
    return TRACE_ID_VAR.get("-") or "-"
