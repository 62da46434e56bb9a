"""
Structured logging configuration.

Two output formats, picked by LOG_FORMAT (auto = json in production):

    json    one object per line; request context and incident/alert ids
            as top-level keys, ready for log aggregation
    pretty  coloured single line with the short request id and any
            incident / alert id in brackets

Context is layered with contextvars: the request middleware binds the
request id, the review workflow and the fan-out bind the incident and
alert ids, and every log line below them carries those fields.

Usage:
    from backend.app.core.logging_config import log_context

    with log_context(incident_id="SOS-1A2B", alert_id="ALR-3A7B"):
        logger.info("Alert dispatched", extra={"recipient_count": 12})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from backend.app.core.config import settings

_log_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("log_context", default=None)

# Per-record extras promoted into the log entry when present
_EXTRA_FIELDS = (
    "incident_id", "alert_id", "recipient_count", "channel",
    "duration_ms", "status_code", "endpoint",
)

# Libraries that log every HTTP round-trip at INFO/DEBUG
_NOISY_LOGGERS = (
    "uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine",
    "google.auth", "urllib3",
)


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get() or {})


def bind_log_context(**fields: Any) -> Token:
    """Layer `fields` over the current context; undo with `reset_log_context`."""
    merged = get_log_context()
    merged.update({k: v for k, v in fields.items() if v is not None})
    return _log_context.set(merged)


def reset_log_context(token: Token) -> None:
    _log_context.reset(token)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    token = bind_log_context(**fields)
    try:
        yield
    finally:
        reset_log_context(token)


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = get_log_context()
    for key in _EXTRA_FIELDS:
        if hasattr(record, key):
            fields[key] = getattr(record, key)
    return fields


class JSONFormatter(logging.Formatter):
    """Machine-parseable JSON log output for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_fields(record))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str, ensure_ascii=False)


class PrettyFormatter(logging.Formatter):
    """Coloured human-readable format for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        fields = _record_fields(record)
        tags = [
            str(fields[key])[:8] if key == "request_id" else str(fields[key])
            for key in ("request_id", "incident_id", "alert_id")
            if fields.get(key)
        ]
        tag_str = f" [{' '.join(tags)}]" if tags else ""

        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        formatted = (
            f"{self.formatTime(record, '%H:%M:%S')} {level}{tag_str} "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return formatted


def _use_json(log_format: str) -> bool:
    if log_format == "auto":
        return settings.is_production
    if log_format not in ("json", "pretty"):
        raise ValueError(f"LOG_FORMAT must be auto, json or pretty, got {log_format!r}")
    return log_format == "json"


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if _use_json(log_format or settings.LOG_FORMAT):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(PrettyFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
