"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request context (request_id, route, tenant) set by the middleware
    • Sync-pass context (tenant_id, trigger) bound around each tenant pass

Usage:
    from backend.feedsync.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Reconciled feed", extra={"tenant_id": "t1", "created": 3})

    with sync_context("t1", trigger="cron"):
        ...   # every record in here carries tenant_id and trigger
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from backend.feedsync.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})
_sync_context: ContextVar[Optional[Dict[str, str]]] = ContextVar("sync_context", default=None)

# Extra record attributes copied into JSON output when present
STRUCTURED_FIELDS = (
    "tenant_id", "external_id", "alert_id", "post_id",
    "created", "updated", "closed", "duration_ms",
    "status_code", "endpoint",
)


def set_request_context(**kwargs: Any) -> None:
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


@contextmanager
def sync_context(tenant_id: str, trigger: str = "manual") -> Iterator[None]:
    """Tag every record logged inside the block with the tenant and trigger."""
    token = _sync_context.set({"tenant_id": tenant_id, "trigger": trigger})
    try:
        yield
    finally:
        _sync_context.reset(token)


def get_sync_context() -> Optional[Dict[str, str]]:
    return _sync_context.get()


def _record_tenant(record: logging.LogRecord) -> Optional[str]:
    """Explicit ``extra`` wins over the bound sync or request context."""
    tenant = getattr(record, "tenant_id", None)
    if tenant:
        return tenant
    sync = get_sync_context()
    if sync:
        return sync["tenant_id"]
    return get_request_context().get("tenant_id")


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for the log shipper."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": f"{record.module}:{record.lineno}",
        }

        request = get_request_context()
        if request:
            entry["request"] = request
        sync = get_sync_context()
        if sync:
            entry["sync"] = sync

        for key in STRUCTURED_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        tenant = _record_tenant(record)
        if tenant:
            entry["tenant_id"] = tenant

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info).splitlines()[-6:],
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """
    Coloured single-line output:

        12:31:05 INFO     [3f9c1a2b] <t1:cron> backend.feedsync.sync.orchestrator: ...
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def _tags(self, record: logging.LogRecord) -> str:
        tags = ""
        request_id = get_request_context().get("request_id")
        if request_id:
            tags += f" [{request_id[:8]}]"
        tenant = _record_tenant(record)
        sync = get_sync_context()
        if tenant and sync:
            tags += f" <{tenant}:{sync['trigger']}>"
        elif tenant:
            tags += f" <{tenant}>"
        return tags

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{self._tags(record)} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def setup_logging() -> None:
    """Install one stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    # Feed and page clients log their own failures; the transport chatter is noise
    for name in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
