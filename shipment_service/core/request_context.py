"""
Request context middleware

Assigns every request a correlation id (taken from X-Request-ID when the
caller supplies one), exposes it through a context variable so services and
log records can pick it up, and reports it back with the request duration.
"""
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "x-request-id"
REQUEST_DURATION_HEADER = "x-request-duration"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Correlation id of the request being served, if any."""
    return _request_id.get()


def set_request_id(request_id: Optional[str]):
    return _request_id.set(request_id)


def reset_request_id(token) -> None:
    _request_id.reset(token)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def current_or_new_correlation_id() -> str:
    return get_request_id() or new_correlation_id()


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_correlation_id()
        request.state.request_id = request_id
        request.state.started_at = time.perf_counter()

        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)

        duration = time.perf_counter() - request.state.started_at
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[REQUEST_DURATION_HEADER] = f"{duration:.4f}"
        return response
