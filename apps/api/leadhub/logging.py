from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from leadhub.context import get_log_context


_RESERVED = set(logging.makeLogRecord({}).__dict__) | {"args", "msg", "message", "correlation_id", "surface_id"}

# Only these ``extra`` keys reach the output; record payloads (names, e-mails)
# must never be logged.
LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "entity_type",
        "entity_id",
        "from_status",
        "to_status",
        "field",
        "outcome",
        "event_type",
        "subscriber_count",
        "divergent_count",
        "error",
    }
)
MAX_ERROR_LENGTH = 500


def _bind_context(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if getattr(record, key, None) is None:
            setattr(record, key, value)


class LogContextFilter(logging.Filter):
    """Stamps the request's correlation id and dashboard surface id on records."""

    def filter(self, record: logging.LogRecord) -> bool:
        _bind_context(record)
        return True


_default_record_factory = logging.getLogRecordFactory()


def _context_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # also covers handlers installed after configure_logging (pytest's caplog)
    record = _default_record_factory(*args, **kwargs)
    _bind_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED or key not in LOG_FIELDS or value is None:
                continue
            if key == "error" and isinstance(value, str):
                value = value[:MAX_ERROR_LENGTH]
            fields[key] = value

        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "surface_id": getattr(record, "surface_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadhub_configured", False):
        return

    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(resolved)
    logging.setLogRecordFactory(_context_record_factory)
    root_logger.addHandler(handler)
    root_logger._leadhub_configured = True  # type: ignore[attr-defined]
