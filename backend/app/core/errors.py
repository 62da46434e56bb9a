"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for intake, review and fan-out
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        SOSAPIError,
        NotFoundError,
        ValidationError,
        AlreadyReviewedError,
        register_error_handlers,
    )

    raise NotFoundError("SOS report", id="SOS-3A7B9C")

Delivery-channel failures are NOT exceptions: adapters report them as
DeliveryOutcome values which the fan-out orchestrator aggregates.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SOSAPIError(Exception):
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


class NotFoundError(SOSAPIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(SOSAPIError):
    """Input validation failed (400). Raised before any state change."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class InvalidDecisionError(SOSAPIError):
    """Review decision is not one of the terminal states (400)."""

    def __init__(self, decision: Any):
        super().__init__(
            message="Decision must be approved or rejected",
            status_code=400,
            error_code="INVALID_DECISION",
            details={"decision": decision},
        )


class AlreadyReviewedError(SOSAPIError):
    """Review attempted on a report that is no longer pending (400)."""

    def __init__(self, incident_id: str, status: Optional[str] = None):
        super().__init__(
            message="SOS report has already been reviewed",
            status_code=400,
            error_code="ALREADY_REVIEWED",
            details={"sos_id": incident_id, "status": status},
        )


class NoRecipientsError(SOSAPIError):
    """
    Fan-out found zero eligible nearby users.

    Never rendered as an HTTP error: the review workflow records it on the
    report's alert outcome and the review itself still succeeds.
    """

    def __init__(self, incident_id: str, radius_m: float):
        super().__init__(
            message="No nearby users found to send alerts",
            status_code=200,
            error_code="NO_RECIPIENTS",
            details={"sos_id": incident_id, "radius_m": radius_m},
        )


class UpstreamUnavailableError(SOSAPIError):
    """Classifier / geocoder / store call failed or timed out (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Upstream service '{service}' unavailable: {message}",
            status_code=502,
            error_code="UPSTREAM_UNAVAILABLE",
            details={"service": service, **details},
        )


class AuthenticationError(SOSAPIError):
    """Missing or invalid admin credentials (401)."""

    def __init__(self, message: str = "Admin authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
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
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
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

    @app.exception_handler(SOSAPIError)
    async def handle_sos_error(request: Request, exc: SOSAPIError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed: %s", exc.errors())
        return _build_error_response(
            400, "VALIDATION_ERROR", "Validation failed",
            {"errors": jsonable_errors(exc)}, request,
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


def jsonable_errors(exc: RequestValidationError) -> list:
    """Strip non-serialisable context (e.g. exception objects) from errors."""
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
