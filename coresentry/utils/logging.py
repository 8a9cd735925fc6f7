"""
Core Sentry - Structured Logging
================================

JSON logging for the engine and its HTTP host. Every decision cycle gets
a correlation ID so the advisory request, the validation outcome and the
dispatch result of one cycle can be grouped in a log aggregator.

Usage:
    from coresentry.utils.logging import get_logger, setup_logging

    setup_logging(service_name="coresentry", log_level="INFO")
    logger = get_logger(__name__)

    logger.info("Advisory decision accepted", extra={"action": "NONE"})
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional
from contextvars import ContextVar

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# LogRecord attributes that are not user supplied "extra" fields
_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
})


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Each entry carries timestamp, level, service, logger, message, the
    correlation ID of the current decision cycle (if any), exception text
    and every field passed through ``extra``.
    """

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_entry.setdefault(key, value)

        return json.dumps(log_entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that injects the current correlation ID.

    Unlike the stock ``LoggerAdapter`` it keeps the caller's ``extra``
    fields instead of replacing them with the adapter's own.
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(kwargs.get("extra") or {})

        if "correlation_id" not in extra:
            correlation_id = correlation_id_var.get()
            if correlation_id:
                extra["correlation_id"] = correlation_id

        kwargs["extra"] = extra
        return msg, kwargs


_loggers: dict[str, ContextualLogger] = {}
_service_name: str = "coresentry"


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """
    Configure root logging for the process.

    Call once at startup (the FastAPI host does it in main.py).

    Args:
        service_name: Name reported in every log entry
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines if True, human-readable lines otherwise
    """
    global _service_name
    _service_name = service_name

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if json_output:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s | {service_name} | %(levelname)s | %(name)s | %(message)s"
        ))

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # The advisory transport logs through these on every request
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> ContextualLogger:
    """
    Get a contextual logger for the given module.

    Args:
        name: Logger name, typically __name__
    """
    if name not in _loggers:
        _loggers[name] = ContextualLogger(logging.getLogger(name), {})
    return _loggers[name]


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set the correlation ID for the current async context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID of the current async context, if any."""
    return correlation_id_var.get()
