"""
Structured logging for the quest engine.

- JSON lines in production, one readable line per record elsewhere
- request_id travels in a ContextVar set by RequestIdMiddleware
- log_event() attaches engine identifiers (user, instance, quest) and any
  extra context, truncating values so a bad payload cannot flood the log
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "quest_engine"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes promoted to top-level JSON keys
_STRUCTURED_KEYS = (
    "user_id",
    "challenge_instance_id",
    "quest_id",
    "event_type",
    "error_code",
    "path",
    "method",
    "status",
    "latency_bucket",
)

_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)

_TRUNCATE_AT = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label; keeps log cardinality low."""
    if latency_ms is None:
        return "unknown"
    for ceiling, label in _LATENCY_BUCKETS:
        if latency_ms < ceiling:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    moment = datetime.fromtimestamp(record.created, timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Fill record.request_id from the context when the caller did not pass one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(
            {key: getattr(record, key) for key in _STRUCTURED_KEYS if getattr(record, key, None) is not None}
        )
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = []
        for label, attr in (("rid", "request_id"), ("user", "user_id"), ("quest", "quest_id")):
            value = getattr(record, attr, None)
            if value:
                tags.append(f"[{label}={value}]")
        prefix = " ".join([_utc_timestamp(record), record.levelname, f"[{LOGGER_NAME}]", *tags])
        line = f"{prefix} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Install a single stdout handler on the engine logger."""
    logger = logging.getLogger(LOGGER_NAME)
    numeric = logging.getLevelName(level.upper())
    logger.setLevel(numeric if isinstance(numeric, int) else logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; stop double printing through root
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _truncate(value: object) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) > _TRUNCATE_AT:
        return text[:_TRUNCATE_AT] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    challenge_instance_id: Optional[str] = None,
    quest_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log an engine event with its identifiers as structured fields."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "challenge_instance_id": challenge_instance_id,
        "quest_id": quest_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    if extra:
        fields["context"] = {key: _truncate(value) for key, value in extra.items()}

    getattr(logger, level, logger.info)(msg, extra=fields)
