"""Single-line JSON logging shared by the StationWatch services."""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")

_RESERVED_ATTRS = frozenset(
    {
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
        "message",
        "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
        ts = f"{ts}.{int(record.msecs):03d}Z"
        log: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": trace_id_var.get(""),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log[key] = value

        if record.exc_info:
            log["exc"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str)


def configure_logging(service: str, level: str | None = None) -> None:
    """Call once at service startup to configure JSON logging."""
    service_name = os.getenv("SERVICE_NAME", service)
    log_level = getattr(
        logging,
        (level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        logging.INFO,
    )
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service_name))
    root.addHandler(handler)
    root.setLevel(log_level)


@contextmanager
def new_trace() -> Iterator[str]:
    """Bind a fresh trace_id for the duration of one unit of work (a tick, a request)."""
    trace_id = str(uuid.uuid4())
    token = trace_id_var.set(trace_id)
    try:
        yield trace_id
    finally:
        trace_id_var.reset(token)


def log_event(logger: logging.Logger, msg: str, level: str = "INFO", **context) -> None:
    """Log a structured event with arbitrary context fields."""
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=context)


def log_exception(
    logger: logging.Logger,
    message: str,
    exception: Exception,
    context: Optional[dict] = None,
) -> None:
    extra = {"error_type": type(exception).__name__, "error": str(exception)}
    if context:
        extra.update(context)
    logger.error(message, extra=extra, exc_info=False)
