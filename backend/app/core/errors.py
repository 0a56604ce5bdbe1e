"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain exceptions for the dispatch engine (not-found, disabled,
      opted-out, configuration, rendering, transport)
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

The dispatch engine raises these internally and converts them into
failed DeliveryResult values at its public boundary; only the HTTP layer
lets them propagate to the handlers registered here.

Usage:
    from backend.app.core.errors import (
        ChannelNotFoundError,
        TemplateNotFoundError,
        TransportError,
        register_error_handlers,
    )

    raise ChannelNotFoundError("email-1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotificationServiceError(Exception):
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


class NotFoundError(NotificationServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ChannelNotFoundError(NotificationServiceError):
    """Unknown channel id (404)."""

    def __init__(self, channel_id: str):
        super().__init__(
            message=f"Channel not found: {channel_id}",
            status_code=404,
            error_code="CHANNEL_NOT_FOUND",
            details={"channel_id": channel_id},
        )


class ChannelDisabledError(NotificationServiceError):
    """Channel exists but is switched off (409)."""

    def __init__(self, channel_id: str):
        super().__init__(
            message=f"Channel {channel_id} is disabled",
            status_code=409,
            error_code="CHANNEL_DISABLED",
            details={"channel_id": channel_id},
        )


class DuplicateChannelError(NotificationServiceError):
    """Explicit creation of a channel id that already exists (409)."""

    def __init__(self, channel_id: str):
        super().__init__(
            message=f"Channel already exists: {channel_id}",
            status_code=409,
            error_code="CHANNEL_EXISTS",
            details={"channel_id": channel_id},
        )


class TemplateNotFoundError(NotificationServiceError):
    """Unknown template id (404)."""

    def __init__(self, template_id: str):
        super().__init__(
            message=f"Template not found: {template_id}",
            status_code=404,
            error_code="TEMPLATE_NOT_FOUND",
            details={"template_id": template_id},
        )


class TemplateRenderError(NotificationServiceError):
    """Strict rendering found declared variables with no value (422)."""

    def __init__(self, template_id: str, missing: List[str]):
        super().__init__(
            message=f"Missing template variables: {', '.join(missing)}",
            status_code=422,
            error_code="TEMPLATE_RENDER_ERROR",
            details={"template_id": template_id, "missing": missing},
        )


class NotificationBlockedError(NotificationServiceError):
    """The recipient user opted out of this event on this channel type (409)."""

    def __init__(self, user_id: str, event: str, channel_type: str):
        super().__init__(
            message=f"Notification blocked by user preferences: {event} via {channel_type}",
            status_code=409,
            error_code="NOTIFICATION_BLOCKED",
            details={"user_id": user_id, "event": event, "channel_type": channel_type},
        )


class ChannelConfigError(NotificationServiceError):
    """Channel configuration cannot be used by its transport (422)."""

    def __init__(self, channel_type: str, message: str = ""):
        super().__init__(
            message=f"Invalid {channel_type} configuration: {message}",
            status_code=422,
            error_code="CHANNEL_CONFIG_ERROR",
            details={"channel_type": channel_type},
        )


class ValidationError(NotificationServiceError):
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


class TransportError(NotificationServiceError):
    """The delivery transport reported a failure (502)."""

    def __init__(self, transport: str, message: str = "", **details: Any):
        super().__init__(
            message=message or f"Transport '{transport}' failed",
            status_code=502,
            error_code="TRANSPORT_ERROR",
            details={"transport": transport, **details},
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

    @app.exception_handler(NotificationServiceError)
    async def handle_service_error(request: Request, exc: NotificationServiceError):
        logger.error(
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
