"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the sync pipeline
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Pipeline taxonomy:
    DecryptionError       — malformed envelope or wrong secret (skip payload)
    FeedFetchError        — network/timeout on a feed (retried next pass)
    ReconciliationError   — stored state violates an invariant (abort tenant)
    PublishError          — social platform rejected a publish/update call
    InvalidTransitionError — posting state machine used out of order

Chain-resolution ambiguity is not an error: the first lineage owner found
wins, silently.

Usage:
    from backend.feedsync.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Incident", tenant_id="t1", incident_id="INC-1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.feedsync.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class FeedSyncError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(FeedSyncError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(FeedSyncError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class AuthenticationError(FeedSyncError):
    """Missing or invalid bearer token (401)."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class ExternalServiceError(FeedSyncError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class RateLimitError(FeedSyncError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )


class DecryptionError(FeedSyncError):
    """Feed envelope could not be decrypted or decoded."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=f"Feed decryption failed: {message}",
            status_code=502,
            error_code="DECRYPTION_ERROR",
            details=details,
        )


class FeedFetchError(ExternalServiceError):
    """Incident or weather feed unreachable (network, timeout, non-2xx)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(service, message, **details)
        self.error_code = "FEED_FETCH_ERROR"


class ReconciliationError(FeedSyncError):
    """Stored incident state has an unexpected shape."""

    def __init__(self, tenant_id: str, message: str, **details: Any):
        super().__init__(
            message=f"Reconciliation aborted for tenant {tenant_id}: {message}",
            status_code=500,
            error_code="RECONCILIATION_ERROR",
            details={"tenant_id": tenant_id, **details},
        )


class PublishError(FeedSyncError):
    """Social platform rejected a publish or update call."""

    def __init__(self, message: str, *, status: Optional[int] = None, **details: Any):
        d = {**details}
        if status is not None:
            d["remote_status"] = status
        super().__init__(
            message=message,
            status_code=502,
            error_code="PUBLISH_ERROR",
            details=d,
        )


class InvalidTransitionError(FeedSyncError):
    """Posting state machine transition not allowed from the current state."""

    def __init__(self, current: str, action: str):
        super().__init__(
            message=f"Cannot {action} from posting state '{current}'",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"state": current, "action": action},
        )


class LeaseUnavailableError(FeedSyncError):
    """Another sync pass holds the tenant lease (409)."""

    def __init__(self, tenant_id: str):
        super().__init__(
            message=f"Sync already in progress for tenant {tenant_id}",
            status_code=409,
            error_code="SYNC_IN_PROGRESS",
            details={"tenant_id": tenant_id},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(FeedSyncError)
    async def handle_feedsync_error(request: Request, exc: FeedSyncError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
