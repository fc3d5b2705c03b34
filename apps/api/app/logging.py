from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


_RESERVED_KEYS = set(logging.makeLogRecord({}).__dict__.keys()) | {"args", "msg", "correlation_id"}
_STRUCTURED_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "entity_id",
    "field_name",
    "field_id",
    "operation",
    "code",
    "error",
}
# "module" is a LogRecord attribute, so callers pass the CRM module as crm_module.
_FIELD_ALIASES = {"crm_module": "module"}
_MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key.startswith("_") or key in _RESERVED_KEYS:
            continue
        if key in _FIELD_ALIASES:
            fields[_FIELD_ALIASES[key]] = value
        elif key in _STRUCTURED_FIELDS:
            fields[key] = value

    error = fields.get("error")
    if isinstance(error, str):
        fields["error"] = error[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, correlation_id and whitelisted fields."""

    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_fieldbook_configured", False):
        return

    resolved = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, resolved, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())

    logging.setLogRecordFactory(_record_factory)
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    root_logger._fieldbook_configured = True  # type: ignore[attr-defined]
