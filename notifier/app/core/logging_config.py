"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (one object per line)
    • Coloured console logs for development
    • Scoped context: ``request_id`` / ``actor_id`` for API calls,
      ``alert_id`` for scheduled firings running on worker threads

Usage:
    from notifier.app.core.logging_config import setup_logging, log_context

    setup_logging()
    with log_context(alert_id=7):
        logger.info("Firing", extra={"channel_type": "email"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from notifier.app.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Extra attributes promoted to top-level JSON keys
_EXTRA_FIELDS = (
    "alert_id", "channel_id", "channel_type", "recipient_count",
    "slot", "duration_ms", "status_code", "endpoint", "topic",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "apscheduler")


def current_context() -> Dict[str, Any]:
    return _log_context.get()


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Extend the log context for the duration of the block."""
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context nested under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        ctx = current_context()
        if ctx:
            entry["context"] = ctx
        entry.update({k: getattr(record, k) for k in _EXTRA_FIELDS if hasattr(record, k)})

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {
                "type": type(exc).__name__,
                "message": str(exc),
                "trace": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _tag(ctx: Dict[str, Any]) -> str:
        parts = []
        if ctx.get("request_id"):
            parts.append(ctx["request_id"][:8])
        if ctx.get("alert_id") is not None:
            parts.append(f"alert={ctx['alert_id']}")
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{self._tag(current_context())} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
