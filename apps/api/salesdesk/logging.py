from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from salesdesk.context import get_correlation_id
from salesdesk.core.config import get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
# Only these extras reach the output; lead payloads never get logged wholesale.
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "request_id",
    "lead_id",
    "canonical_lead_id",
    "decision",
    "action",
    "role",
    "actor_id",
    "reason",
    "match_type",
    "reparented_activities",
    "event_type",
    "error",
}
_MAX_ERROR_LENGTH = 500


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _BASE_RECORD_KEYS or key not in _KNOWN_FIELDS:
            continue
        if value is None:
            continue
        fields[key] = value
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Single-line output for local runs: ``LEVEL logger [correlation] msg key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = " ".join(f"{key}={value}" for key, value in sorted(extract_fields(record).items()))
        line = f"{record.levelname} {record.name} [{getattr(record, 'correlation_id', None) or '-'}] {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_salesdesk_configured", False):
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextLogFormatter() if settings.log_format.lower() == "text" else JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._salesdesk_configured = True  # type: ignore[attr-defined]
