"""
GCC Logistics Carrier Implementation

Qatar, UAE, Saudi Arabia and Oman. Authenticates every call with a static
API key/secret header pair, so there is no token to cache.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shipment_service.core.exceptions import ShippingProviderError
from shipment_service.models.shipment import ShipmentStatus
from shipment_service.modules.shipping.carriers import register_carrier
from shipment_service.modules.shipping.carriers.base import (
    BaseCarrier,
    CarrierShipmentResult,
    Rate,
    TrackingUpdate,
    WebhookEnvelope,
    parse_date,
    parse_datetime,
)
from shipment_service.modules.shipping.regions import (
    SHIPPING_METHODS,
    CarrierCode,
    ShippingMethod,
    estimated_delivery_date,
)
from shipment_service.schemas.shipping import RateQuoteRequest, ShippingRequest

logger = logging.getLogger(__name__)


GCC_STATUS_MAP = {
    "CREATED": ShipmentStatus.PENDING,
    "BOOKED": ShipmentStatus.PENDING,
    "PENDING": ShipmentStatus.PENDING,
    "PACKED": ShipmentStatus.PACKED,
    "READY_FOR_PICKUP": ShipmentStatus.PACKED,
    "PICKED_UP": ShipmentStatus.IN_TRANSIT,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT,
    "AT_HUB": ShipmentStatus.IN_TRANSIT,
    "CUSTOMS": ShipmentStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": ShipmentStatus.IN_TRANSIT,
    "DELIVERY_ATTEMPTED": ShipmentStatus.IN_TRANSIT,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "FAILED": ShipmentStatus.FAILED,
    "LOST": ShipmentStatus.FAILED,
    "DAMAGED": ShipmentStatus.FAILED,
    "CANCELLED": ShipmentStatus.FAILED,
    "RETURNED": ShipmentStatus.RETURNED,
    "RETURN_TO_SENDER": ShipmentStatus.RETURNED,
}

SERVICE_TYPES = {
    ShippingMethod.STANDARD: "STD",
    ShippingMethod.EXPRESS: "EXP",
    ShippingMethod.OVERNIGHT: "ONX",
    ShippingMethod.ECONOMY: "ECO",
    ShippingMethod.PRIORITY: "PRI",
}
_METHOD_BY_SERVICE = {code: method for method, code in SERVICE_TYPES.items()}


@register_carrier(CarrierCode.GCC_LOGISTICS)
class GCCLogisticsCarrier(BaseCarrier):
    """GCC Logistics (Gulf region)."""

    signature_header = "X-GCC-Logistics-Signature"
    status_map = GCC_STATUS_MAP

    @property
    def carrier_code(self) -> str:
        return CarrierCode.GCC_LOGISTICS.value

    @property
    def carrier_name(self) -> str:
        return "GCC Logistics"

    def get_tracking_url(self, tracking_number: str) -> Optional[str]:
        return f"https://tracking.gcc-logistics.com/track/{tracking_number}"

    def get_label_url(self, shipment_id: str) -> str:
        return f"https://labels.gcc-logistics.com/download/{shipment_id}"

    def _auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        return {
            "X-API-Key": self.config.credentials.api_key,
            "X-API-Secret": self.config.credentials.api_secret,
        }

    # ==================== Shipments ====================

    async def create_shipment(self, request: ShippingRequest) -> CarrierShipmentResult:
        logger.info(f"Creating GCC Logistics shipment for {request.order_id} ({self.region})")
        data = await self._request("POST", "/shipments", json_body={
            "reference": request.order_id,
            "service_type": SERVICE_TYPES.get(request.method, "STD"),
            "shipper": self._address(request.origin),
            "consignee": self._address(request.destination),
            "parcel": {
                "weight_kg": request.weight / 1000,
                "length_cm": request.dimensions.length,
                "width_cm": request.dimensions.width,
                "height_cm": request.dimensions.height,
            },
            "declared_value": {"amount": request.value, "currency": request.currency},
            "items": [
                {"sku": item.sku or item.id, "description": item.name, "quantity": item.quantity, "value": item.value}
                for item in request.items
            ],
            "instructions": request.instructions or "",
        })
        shipment = self._shipment_body(data)

        with self._translating(data):
            result = self._to_result(shipment)
        if result.estimated_delivery is None:
            result.estimated_delivery = estimated_delivery_date(request.method)
        result.metadata.update({
            "order_id": request.order_id,
            "service_type": SERVICE_TYPES.get(request.method, "STD"),
            "mode": self.mode,
            "region": self.region,
        })
        return result

    async def get_shipment_status(self, carrier_shipment_id: str) -> CarrierShipmentResult:
        data = await self._request("GET", f"/shipments/{carrier_shipment_id}")
        shipment = self._shipment_body(data, fallback_id=carrier_shipment_id)
        with self._translating(data):
            return self._to_result(shipment)

    async def track_shipment(self, tracking_number: str) -> List[TrackingUpdate]:
        data = await self._request("GET", f"/tracking/{tracking_number}")
        events = data.get("events") if isinstance(data, dict) else data
        updates = []
        with self._translating(data):
            for event in events or []:
                raw_status = event.get("status")
                updates.append(TrackingUpdate(
                    tracking_number=tracking_number,
                    status=self.map_status(raw_status),
                    timestamp=parse_datetime(event.get("timestamp")) or datetime.now(timezone.utc),
                    description=event.get("description") or str(raw_status or "Status update"),
                    location=event.get("location") or None,
                    metadata={"raw_status": raw_status, "facility": event.get("facility")},
                ))
        return updates

    async def cancel_shipment(self, carrier_shipment_id: str, reason: Optional[str] = None) -> bool:
        logger.info(f"Cancelling GCC Logistics shipment {carrier_shipment_id}")
        data = await self._request(
            "POST",
            f"/shipments/{carrier_shipment_id}/cancel",
            json_body={"reason": reason or "Customer requested cancellation"},
        )
        if isinstance(data, dict) and data.get("cancelled") is False:
            logger.warning(f"GCC Logistics declined cancellation of {carrier_shipment_id}: {data.get('reason')}")
            return False
        return True

    async def get_shipping_rates(self, request: RateQuoteRequest) -> List[Rate]:
        origin_country = (request.origin.country if request.origin else None) or self.region
        destination_country = request.destination_country or self.region
        data = await self._request("POST", "/rates", json_body={
            "origin_country": origin_country,
            "destination_country": destination_country,
            "weight_kg": (request.weight or 1000) / 1000,
            "service_type": SERVICE_TYPES.get(request.method) if request.method else None,
        })
        options = data.get("rates") if isinstance(data, dict) else data

        rates = []
        with self._translating(data):
            for option in options or []:
                method = _METHOD_BY_SERVICE.get(option.get("service_type"), ShippingMethod.STANDARD)
                info = SHIPPING_METHODS[method]
                rates.append(Rate(
                    carrier=self.carrier_code,
                    method=method.value,
                    cost=float(option.get("amount") or 0),
                    currency=option.get("currency") or self.config.currency,
                    estimated_days=int(option.get("transit_days") or info.estimated_days),
                    description=option.get("description") or f"{info.name} delivery within GCC",
                    is_available=bool(option.get("available", True)),
                ))
        return rates

    # ==================== Webhooks ====================

    def _parse_webhook(self, payload: Dict[str, Any], envelope: WebhookEnvelope) -> None:
        if payload.get("event_id") or payload.get("id"):
            envelope.id = str(payload.get("event_id") or payload.get("id"))
        envelope.event = payload.get("event") or payload.get("type") or "shipment.updated"

        shipment = (payload.get("data") or {}).get("shipment") or payload.get("shipment") or payload.get("data") or {}
        if shipment.get("shipment_id"):
            envelope.carrier_shipment_id = str(shipment["shipment_id"])
        if shipment.get("tracking_number"):
            envelope.tracking_number = str(shipment["tracking_number"])

        raw_status = shipment.get("status")
        if raw_status is None:
            return

        envelope.status = self.map_status(raw_status)
        envelope.update = TrackingUpdate(
            tracking_number=envelope.tracking_number or "",
            status=envelope.status,
            timestamp=parse_datetime(shipment.get("timestamp") or payload.get("timestamp")) or envelope.received_at,
            description=shipment.get("description") or str(raw_status),
            location=shipment.get("location") or None,
            metadata={"raw_status": raw_status, "courier_partner": shipment.get("courier_partner")},
        )

    # ==================== Helpers ====================

    def _shipment_body(self, data: Any, fallback_id: Optional[str] = None) -> Dict[str, Any]:
        shipment = data.get("shipment", data) if isinstance(data, dict) else None
        if not isinstance(shipment, dict):
            raise ShippingProviderError(self.carrier_code, "Unexpected shipment response", raw_body=str(data))
        if fallback_id and not shipment.get("shipment_id"):
            shipment["shipment_id"] = fallback_id
        if not shipment.get("shipment_id"):
            raise ShippingProviderError(self.carrier_code, "Response missing shipment_id", raw_body=str(data))
        return shipment

    def _to_result(self, shipment: Dict[str, Any]) -> CarrierShipmentResult:
        shipment_id = str(shipment["shipment_id"])
        tracking_number = shipment.get("tracking_number") or None
        raw_status = shipment.get("status")
        cost = shipment.get("cost")

        return CarrierShipmentResult(
            carrier_shipment_id=shipment_id,
            tracking_number=tracking_number or f"GCC-{shipment_id}",
            tracking_number_is_placeholder=tracking_number is None,
            status=self.map_status(raw_status),
            cost=float(cost) if cost not in (None, "") else None,
            currency=shipment.get("currency") or self.config.currency,
            estimated_delivery=parse_date(shipment.get("estimated_delivery")),
            tracking_url=self.get_tracking_url(tracking_number) if tracking_number else None,
            label_url=shipment.get("label_url") or self.get_label_url(shipment_id),
            raw_status=raw_status,
            metadata={
                "gcc_shipment_id": shipment_id,
                "status": raw_status,
                "courier_partner": shipment.get("courier_partner"),
            },
        )

    @staticmethod
    def _address(address) -> Dict[str, Any]:
        return {
            "name": address.name,
            "line1": address.address1,
            "line2": address.address2 or "",
            "city": address.city,
            "state": address.state or "",
            "postal_code": address.postal_code,
            "country": address.country,
            "phone": address.phone or "",
            "email": address.email or "",
        }
