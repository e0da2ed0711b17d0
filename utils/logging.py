"""Structured logging setup.

Two output formats share the same context enrichment:
- console: "asctime - name - levelname - message key=value ..."
- json: one JSON object per line

Both append the current request's request_id, trace_id, span_id and any
fields attached with append_log_fields(), plus everything passed through
logger.<level>(..., extra={...}).
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from utils.context_utils import get_request_context

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
        "asctime",
    )
)

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def collect_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Gather request context fields followed by the record's extras."""
    fields: Dict[str, Any] = {}

    context = get_request_context()
    if context is not None:
        fields["request_id"] = context.request_id
        if context.trace_id:
            fields["trace_id"] = context.trace_id
            fields["span_id"] = context.span_id
        for key, value in context.log_fields:
            fields[key] = value

    for key, value in record.__dict__.items():
        if key not in _RESERVED_ATTRS and not key.startswith("_"):
            fields[key] = value

    return fields


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request/trace context.

    Standard fields: timestamp (ISO 8601 UTC), level, message, logger, module,
    func, line; then request context and extras; then exc_info/stack_info
    when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        log_data.update(collect_fields(record))

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human readable formatter appending context as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(CONSOLE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = collect_fields(record)
        if not fields:
            return line

        pairs = " ".join(f"{key}={_console_value(value)}" for key, value in fields.items())
        head, newline, rest = line.partition("\n")
        return f"{head} {pairs}{newline}{rest}"


def _console_value(value: Any) -> str:
    text = str(value)
    if not text or any(c.isspace() or c == '"' for c in text):
        return json.dumps(text)
    return text


class LogCountFilter(logging.Filter):
    """Counts emitted records per level on a prometheus counter."""

    def __init__(self, counter) -> None:
        super().__init__()
        self.counter = counter

    def filter(self, record: logging.LogRecord) -> bool:
        self.counter.labels(level=record.levelname).inc()
        return True


def configure_logging(level: str = "INFO", fmt: str = "console", log_counter: Optional[Any] = None) -> None:
    """Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        fmt: "console" or "json"
        log_counter: Optional prometheus Counter with a "level" label
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ConsoleFormatter())
    if log_counter is not None:
        handler.addFilter(LogCountFilter(log_counter))
    root_logger.addHandler(handler)

    # uvicorn's access log duplicates the "Request completed." line
    logging.getLogger("uvicorn.access").disabled = True
