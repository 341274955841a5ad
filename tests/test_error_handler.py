import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from shipment_service.core.error_handler import (
    ErrorSanitizationMiddleware,
    error_body,
    is_sensitive_error,
    sanitize_error_message,
)
from shipment_service.core.exceptions import ShippingTimeoutError


def test_sensitive_messages_are_masked():
    assert is_sensitive_error("asyncpg.exceptions.UniqueViolationError")
    assert sanitize_error_message("password authentication failed for user") == (
        "An internal error occurred. Please try again later."
    )


def test_long_messages_are_truncated():
    message = sanitize_error_message("x" * 500)
    assert len(message) == 203
    assert message.endswith("...")


def test_error_body():
    body = error_body(ShippingTimeoutError("shiprocket", 5000))

    assert body["error"] == "SHIPPING_TIMEOUT"
    assert body["kind"] == "timeout"
    assert body["details"] == {"carrier": "shiprocket", "timeout_ms": 5000}


@pytest.mark.asyncio
async def test_unhandled_exception_is_generic_500():
    app = FastAPI()
    app.add_middleware(ErrorSanitizationMiddleware)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("connection to postgresql://user:hunter2@db failed")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/boom")

    assert resp.status_code == 500
    assert "hunter2" not in resp.text
    assert resp.json()["kind"] == "internal"
