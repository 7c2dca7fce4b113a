"""
Request middleware — correlation ids, timing and one log line per call.

Tenant-scoped routes (``/api/v1/tenants/{tenant_id}/...``) put the tenant
id into the request context so every record logged while serving them is
tagged. Cron calls are marked ``trigger=cron``; the Authorization header
is never logged.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.feedsync.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_TENANT_PATH = re.compile(r"^/api/v1/tenants/([^/]+)")


def _request_context(request: Request, request_id: str) -> Dict[str, Any]:
    path = request.url.path
    ctx: Dict[str, Any] = {
        "request_id": request_id,
        "method": request.method,
        "endpoint": path,
        "client_ip": request.client.host if request.client else "unknown",
        "trigger": "cron" if path.startswith("/api/v1/cron") else "api",
    }
    match = _TENANT_PATH.match(path)
    if match:
        ctx["tenant_id"] = match.group(1)
    return ctx


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Cron calls arrive every couple of minutes, so successful calls log at
    INFO and anything >= 400 at WARNING.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        ctx = _request_context(request, request_id)
        set_request_context(**ctx)
        start = time.perf_counter()

        try:
            response = await call_next(request)
            status = response.status_code
        except Exception:
            status = 500
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            if status >= 500 or not ctx["endpoint"].startswith(_QUIET_PREFIXES):
                logger.log(
                    logging.WARNING if status >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)",
                    request.method, ctx["endpoint"], status, duration_ms,
                    extra={"duration_ms": round(duration_ms, 1), "status_code": status},
                )
            set_request_context()

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        return response
