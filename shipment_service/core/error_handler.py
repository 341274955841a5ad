"""
Error handling and sanitization

- Taxonomy errors → JSON body with the status mapped from their kind
- Request validation errors → 400 validation error
- Anything else → generic 500, full traceback logged only
"""
import logging
import traceback
from typing import Union

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shipment_service.core.config import settings
from shipment_service.core.exceptions import ErrorKind, ShipmentServiceError, log_level_for
from shipment_service.core.request_context import get_request_id

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "api_key",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "traceback",
    "file \"",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize an error message for safe client exposure.

    Args:
        error: The error string or exception

    Returns:
        Sanitized error message safe for client
    """
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 200:
        return message[:200] + "..."

    return message


def error_body(error: ShipmentServiceError) -> dict:
    return {
        "error": error.code,
        "kind": error.kind.value,
        "message": sanitize_error_message(error.message),
        "details": error.details,
        "request_id": get_request_id(),
    }


async def shipment_error_handler(request: Request, exc: ShipmentServiceError) -> JSONResponse:
    logger.log(
        log_level_for(exc),
        f"{request.method} {request.url.path} failed: {exc.kind.value} {exc.code}: {exc.message}",
    )
    return JSONResponse(status_code=exc.http_status, content=error_body(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0]["loc"]) if errors else "body"
    logger.info(f"{request.method} {request.url.path} rejected: invalid {field}")
    return JSONResponse(
        status_code=400,
        content={
            "error": "SHIPPING_VALIDATION_FAILED",
            "kind": ErrorKind.VALIDATION.value,
            "message": f"Invalid request field: {field}",
            "details": {"field": field, "errors": [
                {"loc": [str(p) for p in e["loc"]], "msg": e["msg"]} for e in errors
            ]},
            "request_id": get_request_id(),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShipmentServiceError, shipment_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            raise
        except Exception as e:
            error_id = get_request_id() or f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            content = {
                "error": "internal_error",
                "kind": "internal",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": error_id,
            }
            if settings.DEBUG:
                content["message"] = str(e)
                content["type"] = type(e).__name__
            return JSONResponse(status_code=500, content=content)
