"""Error taxonomy and the JSON error envelope.

Every error response has the shape:

    {"error": {"code": "RESOURCE_NOT_FOUND", "message": "...", "details": {...}}}

``details`` is omitted when empty.

Raised by the services:
  ValidationError         400  malformed or missing input (field-level)
  PermissionDeniedError   403  actor lacks the required role
  ResourceNotFoundError   404  unknown shipment id / tracking number
  ConflictError           409  duplicate key or concurrent modification
Anything else is an internal error and surfaces as a generic 500.
"""

import logging
import traceback
from typing import Union

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings

logger = logging.getLogger(__name__)

Details = Union[dict, list, None]


class GlobalEdgeException(Exception):
    """Base for errors that map straight onto an HTTP response."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Details = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details


class ValidationError(GlobalEdgeException):
    def __init__(self, message: str, field: str | None = None):
        super().__init__(
            message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="VALIDATION_ERROR",
            details={"errors": [{"field": field, "message": message}]} if field else None,
        )
        self.field = field


class ResourceNotFoundError(GlobalEdgeException):
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


class ConflictError(GlobalEdgeException):
    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, error_code=error_code)


class PermissionDeniedError(GlobalEdgeException):
    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="PERMISSION_DENIED",
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Details = None,
    headers: dict | None = None,
) -> JSONResponse:
    body: dict = {"code": error_code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


# ── Handlers ─────────────────────────────────────────────────

async def globaledge_exception_handler(request: Request, exc: GlobalEdgeException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "%s on %s: %s", exc.error_code, request.url.path, exc.message,
        extra={"error_code": exc.error_code, **_request_context(request)},
    )
    return create_error_response(exc.status_code, exc.message, exc.error_code, exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("HTTP %s: %s", exc.status_code, exc.detail, extra=_request_context(request))
    return create_error_response(
        exc.status_code,
        str(exc.detail),
        f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, PydanticValidationError],
) -> JSONResponse:
    errors = [
        {
            "field": " -> ".join(str(part) for part in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    logger.warning(
        "Request validation failed on %s", request.url.path,
        extra={"errors": errors, **_request_context(request)},
    )
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "VALIDATION_ERROR",
        {"errors": errors},
    )


# (substring in driver message, error code, message)
_INTEGRITY_KINDS = (
    ("foreign key", "FOREIGN_KEY_VIOLATION", "Referenced record does not exist"),
    ("not null", "NULL_VALUE_NOT_ALLOWED", "Required field is missing"),
)


async def database_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    reason = str(getattr(exc, "orig", None) or exc).lower()
    logger.error("Integrity error on %s: %s", request.url.path, reason, extra=_request_context(request))

    # Tracking number, idempotency key or user email already taken
    if "unique" in reason or "duplicate" in reason:
        return create_error_response(
            status.HTTP_409_CONFLICT,
            "A record with this value already exists",
            "DUPLICATE_RECORD",
        )

    for needle, code, message in _INTEGRITY_KINDS:
        if needle in reason:
            return create_error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, message, code)
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Database constraint violation",
        "INTEGRITY_ERROR",
    )


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("Database unavailable on %s: %s", request.url.path, exc, extra=_request_context(request))
    return create_error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Database temporarily unavailable. Please try again.",
        "DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    tb = "".join(traceback.format_exception(exc))
    logger.error("Unhandled exception on %s", request.url.path, exc_info=exc, extra=_request_context(request))

    # Stack traces only outside production, and only in debug mode
    details = None
    if settings.debug and settings.environment != "production":
        details = {"traceback": tb}

    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_SERVER_ERROR",
        details,
    )


def register_exception_handlers(app):
    app.add_exception_handler(GlobalEdgeException, globaledge_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
