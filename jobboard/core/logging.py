"""
Structured logging for the entitlement service.

- JSON lines in production, one readable line per record elsewhere
- request_id bound per request through a ContextVar and stamped by a filter
- fields passed with `extra=` are rendered by both formatters; values under
  secret-looking keys (tokens, Stripe keys) are masked
- log_event() for events that carry user/event/error identifiers
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "jobboard"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "request_id"}

_SECRET_MARKERS = ("secret", "token", "password", "authorization", "api_key")
_MASK = "***"

# (upper bound in ms, label); the last bucket is open-ended
_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def record_fields(record: logging.LogRecord) -> Dict[str, object]:
    """The `extra=` fields of a record, secrets masked, None values dropped."""
    fields = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or value is None:
            continue
        fields[key] = _MASK if _is_secret(key) else value
    return fields


class RequestIdFilter(logging.Filter):
    """Inject request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class _StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        exc_text = self.formatException(record.exc_info) if record.exc_info else None
        return self.render(record, record_fields(record), exc_text)

    def render(self, record: logging.LogRecord, fields: Dict[str, object], exc_text: Optional[str]) -> str:
        raise NotImplementedError

    @staticmethod
    def timestamp(record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(_StructuredFormatter):
    def render(self, record, fields, exc_text):
        payload = {
            "timestamp": self.timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(fields)
        if exc_text:
            payload["exc_info"] = exc_text
        return json.dumps(payload, default=str)


class PrettyFormatter(_StructuredFormatter):
    def render(self, record, fields, exc_text):
        rid = getattr(record, "request_id", None)
        rid_part = f" [rid={rid}]" if rid else ""
        fields_part = "".join(f" {k}={v}" for k, v in sorted(fields.items()))
        line = f"{self.timestamp(record)} {record.levelname} [{LOGGER_NAME}]{rid_part} {record.getMessage()}{fields_part}"
        return f"{line}\n{exc_text}" if exc_text else line


def configure_logging(env: str = "development") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Keep uvicorn's access/error output on its own handlers
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _truncate(value, limit: int = 500) -> str:
    text = repr(value) if not isinstance(value, str) else value
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Log one event on the service logger.

    Identifiers go in as first-class fields; anything in `extra` is
    stringified and truncated so provider payloads cannot flood the log.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        payload[key] = _truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
