"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Field-level errors for rejected request bodies
    • Request context in error responses (non-production)

Usage:
    from notifier.app.core.errors import (
        NotifierError,
        NotFoundError,
        ValidationError,
        PermissionDenied,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id=42)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from notifier.app.core.config import settings

logger = logging.getLogger(__name__)

GENERIC_PERMISSION_MESSAGE = "You don't have permissions to do that."


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotifierError(Exception):
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


class NotFoundError(NotifierError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(NotifierError):
    """
    Malformed condition, schedule or channel shape (400).

    ``errors`` maps field names to messages; a single ``field`` is folded
    into the same map.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        errors: Optional[Dict[str, str]] = None,
    ):
        errs = dict(errors or {})
        if field:
            errs.setdefault(field, message)
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details={"errors": errs},
        )
        self.errors = errs


class ConfigurationError(NotifierError):
    """A referenced endpoint or channel does not exist (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="CONFIGURATION_ERROR",
            details={"errors": {field: message}} if field else {},
        )


class PermissionDenied(NotifierError):
    """Read or write denied (403). The message is shown verbatim."""

    def __init__(self, message: str = GENERIC_PERMISSION_MESSAGE):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
        )


class AuthenticationRequired(NotifierError):
    """No acting user on the request (401)."""

    def __init__(self, message: str = "Unauthenticated"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHENTICATED",
        )


class DeliveryError(NotifierError):
    """A channel send failed. Recovered by the dispatcher, never surfaced."""

    def __init__(self, channel_type: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Delivery via '{channel_type}' failed: {message}",
            status_code=502,
            error_code="DELIVERY_ERROR",
            details={"channel_type": channel_type, **details},
        )


class QueryExecutionError(NotifierError):
    """The query collaborator could not produce a result (502)."""

    def __init__(self, query_id: Any, message: str = ""):
        super().__init__(
            message=f"Query {query_id} failed: {message}",
            status_code=502,
            error_code="QUERY_EXECUTION_ERROR",
            details={"query_id": query_id},
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


def _field_errors(exc: RequestValidationError) -> Dict[str, str]:
    """Flatten pydantic error locations into ``{"channels.0.schedule_type": msg}``."""
    errors: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        errors.setdefault(".".join(loc) or "body", err.get("msg", "invalid"))
    return errors


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(NotifierError)
    async def handle_notifier_error(request: Request, exc: NotifierError):
        log_level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            log_level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.info("Rejected request body: %s", errors)
        return _build_error_response(
            400, "VALIDATION_ERROR", "Invalid request body",
            {"errors": errors}, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            400, "VALIDATION_ERROR", str(exc), request=request,
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
