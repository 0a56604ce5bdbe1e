"""
Log setup for the dispatch service.

Two output shapes share one handler on the root logger:

    APP_ENV=production   one JSON object per line, for log shippers
    anything else        coloured single-line text for a terminal

Dispatch code passes delivery facts through ``extra=`` (channel,
message_id, recipient_count, ...). The JSON shape nests them under
``"dispatch"``; the text shape appends them as ``key=value`` pairs.
While an HTTP request is being handled, the middleware's request id
rides along on every record.

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Notification sent", extra={"channel": "email-1"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

DISPATCH_FIELDS = (
    "channel", "channel_type", "message_id", "recipient_count",
    "duration_ms", "status_code", "endpoint",
)


def set_request_context(**kwargs: Any) -> None:
    """Replace the request fields attached to records; no arguments clears them."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def dispatch_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The delivery facts a caller attached to ``record`` via ``extra=``."""
    return {key: getattr(record, key) for key in DISPATCH_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "service": settings.APP_NAME,
            "src": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        request = get_request_context()
        if request:
            payload["request"] = request

        fields = dispatch_fields(record)
        if fields:
            payload["dispatch"] = fields

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            payload["error"] = {"type": type(exc).__name__, "detail": str(exc)}

        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [req] logger: message key=value ...``"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        line = f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8}{self.RESET}"

        request_id = get_request_context().get("request_id")
        if request_id:
            line += f" [{request_id[:8]}]"
        line += f" {record.name}: {record.getMessage()}"

        fields = dispatch_fields(record)
        if fields:
            line += "  " + " ".join(f"{k}={v}" for k, v in fields.items())

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            line += f"\n    ↳ {type(exc).__name__}: {exc}"
        return line


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    # transport client libraries log every connection at INFO
    for name in ("uvicorn.access", "httpx", "httpcore", "aiosmtplib"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
