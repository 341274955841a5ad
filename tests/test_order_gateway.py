"""
Tests for the HTTP order service gateway.
"""
import json

import httpx
import pytest

from shipment_service.core.exceptions import OrderServiceError
from shipment_service.core.request_context import reset_request_id, set_request_id
from shipment_service.services.order_gateway import HttpOrderGateway

BASE_URL = "https://orders.test/api"


def _gateway(handler, token="svc-token") -> HttpOrderGateway:
    return HttpOrderGateway(BASE_URL, token=token, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_order_unwraps_data_envelope():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {
            "id": "ORD-1001",
            "status": "PAID",
            "shipping_address": {"country": "in"},
        }})

    gateway = _gateway(handler)
    order = await gateway.get_order("ORD-1001")
    await gateway.close()

    assert order.order_id == "ORD-1001"
    assert order.status == "paid"
    assert order.destination_country == "IN"
    assert order.shipped is False
    assert seen[0].url.path == "/api/orders/ORD-1001"
    assert seen[0].headers["Authorization"] == "Bearer svc-token"


@pytest.mark.asyncio
async def test_get_order_flags_shipped_orders():
    gateway = _gateway(lambda request: httpx.Response(200, json={"id": "ORD-9", "status": "shipped"}))

    order = await gateway.get_order("ORD-9")
    await gateway.close()

    assert order.shipped is True
    assert order.destination_country is None


@pytest.mark.asyncio
async def test_missing_order_is_none():
    gateway = _gateway(lambda request: httpx.Response(404, json={"detail": "not found"}))

    assert await gateway.get_order("ORD-404") is None
    await gateway.close()


@pytest.mark.asyncio
async def test_server_error_raises():
    gateway = _gateway(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(OrderServiceError) as exc_info:
        await gateway.get_order("ORD-1001")
    await gateway.close()

    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_connection_failure_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    gateway = _gateway(handler)

    with pytest.raises(OrderServiceError, match="Order lookup failed"):
        await gateway.get_order("ORD-1001")
    await gateway.close()


@pytest.mark.asyncio
async def test_invalid_json_raises():
    gateway = _gateway(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(OrderServiceError, match="invalid JSON"):
        await gateway.get_order("ORD-1001")
    await gateway.close()


@pytest.mark.asyncio
async def test_update_status_sends_shipment_reference_and_request_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    gateway = _gateway(handler, token="")
    token = set_request_id("req-abc")
    try:
        await gateway.update_order_status("ORD-1001", "delivered", shipment_id="shp_1", tracking_number="AWB1")
    finally:
        reset_request_id(token)
    await gateway.close()

    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.path == "/api/orders/ORD-1001/status"
    assert request.headers["X-Request-ID"] == "req-abc"
    assert "Authorization" not in request.headers
    assert json.loads(request.content) == {
        "status": "delivered", "shipment_id": "shp_1", "tracking_number": "AWB1",
    }


@pytest.mark.asyncio
async def test_update_status_rejection_raises():
    gateway = _gateway(lambda request: httpx.Response(409, json={"detail": "invalid transition"}))

    with pytest.raises(OrderServiceError) as exc_info:
        await gateway.update_order_status("ORD-1001", "cancelled")
    await gateway.close()

    assert exc_info.value.status_code == 409
