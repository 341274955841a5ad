"""
Tests for the GCC Logistics adapter against a mocked GCC Logistics API.
"""
import json

import pytest

from conftest import GCC_SECRET, GCC_URL, CarrierStub, gcc_config, gcc_created, signed
from shipment_service.core.exceptions import ShippingProviderError
from shipment_service.models.shipment import ShipmentStatus
from shipment_service.modules.shipping.carriers.gcc_logistics import GCCLogisticsCarrier
from shipment_service.schemas.shipping import RateQuoteRequest


@pytest.fixture
def api() -> CarrierStub:
    return CarrierStub()


@pytest.fixture
def carrier(api) -> GCCLogisticsCarrier:
    return GCCLogisticsCarrier(gcc_config("QA", "QAR"), transport=api.transport())


@pytest.mark.asyncio
async def test_every_call_sends_api_key_headers(api, carrier, make_request):
    api.on("POST", f"{GCC_URL}/shipments", json=gcc_created())

    await carrier.create_shipment(make_request("ORD-2001", country="QA"))
    await carrier.close()

    request = api.calls_to("POST", f"{GCC_URL}/shipments")[0]
    assert request.headers["X-API-Key"] == "gcc-key"
    assert request.headers["X-API-Secret"] == "gcc-secret-key"
    assert "Authorization" not in request.headers


@pytest.mark.asyncio
async def test_create_shipment(api, carrier, make_request):
    api.on("POST", f"{GCC_URL}/shipments", json=gcc_created())

    result = await carrier.create_shipment(make_request("ORD-2001", country="QA", method="express"))
    await carrier.close()

    body = json.loads(api.calls_to("POST", f"{GCC_URL}/shipments")[0].content)
    assert body["reference"] == "ORD-2001"
    assert body["service_type"] == "EXP"
    assert body["parcel"]["weight_kg"] == 1.2
    assert body["consignee"]["country"] == "QA"

    assert result.carrier_shipment_id == "GS-77"
    assert result.tracking_number == "GCCQA000777"
    assert result.tracking_number_is_placeholder is False
    assert result.tracking_url == "https://tracking.gcc-logistics.com/track/GCCQA000777"
    assert result.label_url == "https://labels.gcc-logistics.com/download/GS-77"
    assert result.status == ShipmentStatus.PENDING
    assert result.cost == 42.0
    assert result.currency == "QAR"
    assert result.estimated_delivery.isoformat() == "2026-11-02"


@pytest.mark.asyncio
async def test_create_without_tracking_number_uses_placeholder(api, carrier, make_request):
    api.on("POST", f"{GCC_URL}/shipments", json=gcc_created(tracking_number=None))

    result = await carrier.create_shipment(make_request("ORD-2001", country="QA"))
    await carrier.close()

    assert result.tracking_number == "GCC-GS-77"
    assert result.tracking_number_is_placeholder is True
    assert result.tracking_url is None


@pytest.mark.asyncio
async def test_create_response_without_id_is_provider_error(api, carrier, make_request):
    api.on("POST", f"{GCC_URL}/shipments", json={"shipment": {"status": "CREATED"}})

    with pytest.raises(ShippingProviderError, match="shipment_id"):
        await carrier.create_shipment(make_request("ORD-2001", country="QA"))
    await carrier.close()


@pytest.mark.asyncio
async def test_status_and_tracking(api, carrier):
    api.on("GET", f"{GCC_URL}/shipments/GS-77", json={"shipment_id": "GS-77", "status": "AT_HUB"})
    api.on("GET", f"{GCC_URL}/tracking/GCCQA000777", json={"events": [
        {"status": "PICKED_UP", "timestamp": "2026-10-01T08:00:00Z", "location": "Doha Hub"},
        {"status": "DELIVERED", "timestamp": "2026-10-02T15:00:00+03:00", "description": "Signed by A."},
    ]})

    status = await carrier.get_shipment_status("GS-77")
    updates = await carrier.track_shipment("GCCQA000777")
    await carrier.close()

    assert status.status == ShipmentStatus.IN_TRANSIT
    assert [u.status for u in updates] == [ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED]
    assert updates[1].description == "Signed by A."


@pytest.mark.asyncio
async def test_carrier_side_cancellation_reports_failed(api, carrier):
    api.on("GET", f"{GCC_URL}/shipments/GS-77", json={"shipment": {"shipment_id": "GS-77", "status": "CANCELLED"}})

    result = await carrier.get_shipment_status("GS-77")
    await carrier.close()

    assert result.status == ShipmentStatus.FAILED


@pytest.mark.asyncio
async def test_cancel(api, carrier):
    api.on("POST", f"{GCC_URL}/shipments/GS-77/cancel", json={"cancelled": True})
    api.on("POST", f"{GCC_URL}/shipments/GS-78/cancel", json={"cancelled": False, "reason": "In transit"})

    assert await carrier.cancel_shipment("GS-77") is True
    assert await carrier.cancel_shipment("GS-78") is False
    await carrier.close()


@pytest.mark.asyncio
async def test_rates_for_empty_request(api, carrier):
    api.on("POST", f"{GCC_URL}/rates", json={"rates": [
        {"service_type": "EXP", "amount": 65, "currency": "QAR", "transit_days": 1},
        {"service_type": "STD", "amount": 30},
    ]})

    rates = await carrier.get_shipping_rates(RateQuoteRequest())
    await carrier.close()

    body = json.loads(api.calls_to("POST", f"{GCC_URL}/rates")[0].content)
    assert body["origin_country"] == "QA"
    assert body["destination_country"] == "QA"
    assert body["weight_kg"] == 1.0

    standard = next(r for r in rates if r.method == "standard")
    assert standard.currency == "QAR"
    assert standard.estimated_days == 5


@pytest.mark.asyncio
async def test_malformed_rate_is_provider_error(api, carrier):
    api.on("POST", f"{GCC_URL}/rates", json={"rates": [{"service_type": "EXP", "amount": "65 QAR"}]})

    with pytest.raises(ShippingProviderError, match="Unexpected response") as exc_info:
        await carrier.get_shipping_rates(RateQuoteRequest())
    await carrier.close()

    assert exc_info.value.carrier == "gcc_logistics"
    assert "65 QAR" in exc_info.value.raw_body


@pytest.mark.asyncio
async def test_non_object_tracking_event_is_provider_error(api, carrier):
    api.on("GET", f"{GCC_URL}/tracking/GCCQA000777", json={"events": [None]})

    with pytest.raises(ShippingProviderError):
        await carrier.track_shipment("GCCQA000777")
    await carrier.close()


@pytest.mark.asyncio
async def test_malformed_cost_on_status_is_provider_error(api, carrier):
    api.on("GET", f"{GCC_URL}/shipments/GS-77", json={"shipment_id": "GS-77", "status": "AT_HUB", "cost": "free"})

    with pytest.raises(ShippingProviderError):
        await carrier.get_shipment_status("GS-77")
    await carrier.close()


def test_webhook_signature_and_parsing(carrier):
    body = json.dumps({
        "event_id": "gcc-evt-9",
        "event": "shipment.delivered",
        "data": {"shipment": {
            "shipment_id": "GS-77",
            "tracking_number": "GCCQA000777",
            "status": "DELIVERED",
            "timestamp": "2026-10-02T15:00:00Z",
            "location": "Doha",
        }},
    }).encode()

    assert carrier.validate_webhook(body, signed(body, GCC_SECRET))
    assert not carrier.validate_webhook(body, signed(body, "nope"))

    envelope = carrier.process_webhook(body)
    assert envelope.id == "gcc-evt-9"
    assert envelope.event == "shipment.delivered"
    assert envelope.carrier_shipment_id == "GS-77"
    assert envelope.status == ShipmentStatus.DELIVERED
    assert envelope.update.location == "Doha"


def test_webhook_without_status_has_no_update(carrier):
    envelope = carrier.process_webhook(b'{"event_id": "e1", "data": {"shipment": {"shipment_id": "GS-77"}}}')
    assert envelope.status is None
    assert envelope.update is None
    assert envelope.error is None
