"""
Shiprocket Carrier Implementation

India. Email/password login returns a bearer token (valid ~10 days) that is
cached on the adapter and refreshed once on a 401.

Note: Shiprocket may not assign an AWB at order creation. Until it does, the
tracking number is the placeholder SR{shiprocket order id}.
"""
import logging
from datetime import date, datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

from shipment_service.core.exceptions import ShippingProviderError
from shipment_service.models.shipment import ShipmentStatus
from shipment_service.modules.shipping.carriers import register_carrier
from shipment_service.modules.shipping.carriers.base import (
    BaseCarrier,
    CarrierShipmentResult,
    Rate,
    TokenCache,
    TrackingUpdate,
    WebhookEnvelope,
    parse_date,
    parse_datetime,
)
from shipment_service.modules.shipping.regions import (
    CarrierCode,
    ShippingMethod,
    estimated_delivery_date,
)
from shipment_service.schemas.shipping import RateQuoteRequest, ShippingRequest

logger = logging.getLogger(__name__)


TOKEN_TTL = timedelta(hours=240)

# Shiprocket status -> canonical status
SHIPROCKET_STATUS_MAP = {
    "NEW": ShipmentStatus.PENDING,
    "AWB_ASSIGNED": ShipmentStatus.PENDING,
    "PROCESSING": ShipmentStatus.PACKED,
    "READY_TO_SHIP": ShipmentStatus.PACKED,
    "PICKUP_SCHEDULED": ShipmentStatus.PACKED,
    "PICKUP_GENERATED": ShipmentStatus.PACKED,
    "PICKED_UP": ShipmentStatus.IN_TRANSIT,
    "SHIPPED": ShipmentStatus.IN_TRANSIT,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": ShipmentStatus.IN_TRANSIT,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "CANCELED": ShipmentStatus.FAILED,
    "CANCELLED": ShipmentStatus.FAILED,
    "LOST": ShipmentStatus.FAILED,
    "DAMAGED": ShipmentStatus.FAILED,
    "RTO": ShipmentStatus.RETURNED,
    "RTO_INITIATED": ShipmentStatus.RETURNED,
    "RTO_IN_TRANSIT": ShipmentStatus.RETURNED,
    "RTO_DELIVERED": ShipmentStatus.RETURNED,
}

PRIORITY_MAP = {
    ShippingMethod.STANDARD: "Normal",
    ShippingMethod.EXPRESS: "High",
    ShippingMethod.OVERNIGHT: "Urgent",
    ShippingMethod.ECONOMY: "Low",
    ShippingMethod.PRIORITY: "High",
}

COURIER_METHODS = {
    "blue dart": ShippingMethod.EXPRESS,
    "dtdc": ShippingMethod.STANDARD,
    "delhivery": ShippingMethod.STANDARD,
    "ecom express": ShippingMethod.STANDARD,
    "fedex": ShippingMethod.EXPRESS,
    "dhl": ShippingMethod.EXPRESS,
}


@register_carrier(CarrierCode.SHIPROCKET)
class ShiprocketCarrier(BaseCarrier):
    """Shiprocket aggregator (India)."""

    requires_token = True
    signature_header = "X-Shiprocket-Signature"
    status_map = SHIPROCKET_STATUS_MAP

    @property
    def carrier_code(self) -> str:
        return CarrierCode.SHIPROCKET.value

    @property
    def carrier_name(self) -> str:
        return "Shiprocket"

    def get_tracking_url(self, tracking_number: str) -> Optional[str]:
        return f"https://shiprocket.co/tracking/{tracking_number}"

    # ==================== Auth ====================

    async def _authenticate(self) -> TokenCache:
        data = await self._request(
            "POST",
            "/auth/login",
            json_body={
                "email": self.config.credentials.api_key,
                "password": self.config.credentials.api_secret,
            },
            authenticated=False,
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ShippingProviderError(self.carrier_code, "Authentication failed: no token returned")
        return TokenCache(token=token, expires_at=datetime.now(timezone.utc) + TOKEN_TTL)

    def _auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    # ==================== Shipments ====================

    async def create_shipment(self, request: ShippingRequest) -> CarrierShipmentResult:
        payload = self._build_order_payload(request)
        logger.info(f"Creating Shiprocket order for {request.order_id}")

        response = await self._request("POST", "/orders/create/adhoc", json_body=payload)
        order = self._unwrap(response)

        sr_order_id = order.get("order_id")
        if sr_order_id in (None, ""):
            raise ShippingProviderError(self.carrier_code, "Create response missing order_id", raw_body=str(order))

        with self._translating(response):
            result = self._to_result(order)
        result.currency = request.currency
        result.estimated_delivery = estimated_delivery_date(request.method)
        result.metadata["channel_id"] = order.get("channel_id")
        # Creation is acknowledged as pending regardless of Shiprocket's label ("NEW")
        result.status = ShipmentStatus.PENDING
        return result

    async def get_shipment_status(self, carrier_shipment_id: str) -> CarrierShipmentResult:
        response = await self._request("GET", f"/orders/show/{carrier_shipment_id}")
        order = self._unwrap(response)
        if not order.get("order_id"):
            order["order_id"] = carrier_shipment_id
        with self._translating(response):
            result = self._to_result(order)
        result.metadata["tracking_data"] = order.get("tracking_data")
        return result

    async def track_shipment(self, tracking_number: str) -> List[TrackingUpdate]:
        response = await self._request("GET", f"/courier/track/{tracking_number}")
        data = self._unwrap(response)

        updates = []
        with self._translating(response):
            events = data.get("tracking_data") or []
            if isinstance(events, dict):
                events = events.get("shipment_track_activities") or []

            for event in events:
                raw_status = event.get("sr-status-label") or event.get("status") or event.get("activity")
                timestamp = parse_datetime(event.get("time") or event.get("date")) or datetime.now(timezone.utc)
                updates.append(TrackingUpdate(
                    tracking_number=tracking_number,
                    status=self.map_status(raw_status),
                    timestamp=timestamp,
                    description=event.get("activity") or event.get("status") or "Status update",
                    location=event.get("location") or None,
                    metadata={
                        "courier_name": data.get("courier_name"),
                        "awb_code": data.get("awb_code"),
                        "raw_status": raw_status,
                    },
                ))
        return updates

    async def cancel_shipment(self, carrier_shipment_id: str, reason: Optional[str] = None) -> bool:
        logger.info(f"Cancelling Shiprocket shipment {carrier_shipment_id}")
        data = await self._request(
            "POST",
            f"/orders/cancel/shipment/{carrier_shipment_id}",
            json_body={"reason": reason or "Customer requested cancellation"},
        )
        # Explicit decline without an HTTP error
        if isinstance(data, dict) and data.get("cancelled") is False:
            logger.warning(f"Shiprocket declined cancellation of {carrier_shipment_id}: {data.get('message')}")
            return False
        return True

    async def get_shipping_rates(self, request: RateQuoteRequest) -> List[Rate]:
        extras = self.config.extras
        rate_request = {
            "pickup_pincode": (request.origin.postal_code if request.origin else None)
            or extras.get("default_pickup_postcode") or "110001",
            "delivery_pincode": (request.destination.postal_code if request.destination else None)
            or extras.get("default_delivery_postcode") or "400001",
            "weight": (request.weight or 1000) / 1000,  # grams -> kg
            "cod": 0,  # Prepaid
        }

        response = await self._request("POST", "/courier/serviceability/rates", json_body=rate_request)
        options = response
        if isinstance(options, dict):
            options = self._unwrap(options).get("available_courier_companies") or []

        rates = []
        with self._translating(response):
            for option in options:
                courier = option.get("courier_name") or "Courier"
                days = int(option.get("estimated_delivery_days") or 5)
                rates.append(Rate(
                    carrier=self.carrier_code,
                    method=self.courier_method(courier).value,
                    cost=float(option.get("rate") or 0),
                    currency="INR",
                    estimated_days=days,
                    description=f"{courier} - {days} days",
                    is_available=bool(option.get("available", True)),
                ))
        return rates

    # ==================== Webhooks ====================

    def _parse_webhook(self, payload: Dict[str, Any], envelope: WebhookEnvelope) -> None:
        if payload.get("id"):
            envelope.id = str(payload["id"])
        envelope.event = payload.get("event") or "shipment.updated"

        data = payload.get("data") or payload
        shipment = data.get("shipment") or data

        sr_order_id = shipment.get("sr_order_id") or shipment.get("shipment_id")
        envelope.carrier_shipment_id = str(sr_order_id) if sr_order_id else None
        awb = shipment.get("awb") or shipment.get("awb_code")
        envelope.tracking_number = str(awb) if awb else None

        raw_status = shipment.get("current_status") or shipment.get("shipment_status") or shipment.get("status")
        if raw_status is None:
            return

        envelope.status = self.map_status(raw_status)
        envelope.update = TrackingUpdate(
            tracking_number=envelope.tracking_number or "",
            status=envelope.status,
            timestamp=parse_datetime(
                shipment.get("current_timestamp") or shipment.get("timestamp")
            ) or envelope.received_at,
            description=str(raw_status),
            location=shipment.get("location") or None,
            metadata={"raw_status": raw_status, "courier_name": shipment.get("courier_name")},
        )

    # ==================== Helpers ====================

    @staticmethod
    def _unwrap(data: Any) -> Dict[str, Any]:
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            return data["data"]
        return data if isinstance(data, dict) else {}

    @staticmethod
    def courier_method(courier_name: str) -> ShippingMethod:
        return COURIER_METHODS.get((courier_name or "").strip().lower(), ShippingMethod.STANDARD)

    def _to_result(self, order: Dict[str, Any]) -> CarrierShipmentResult:
        sr_order_id = str(order.get("order_id"))
        awb = order.get("awb_code") or None
        raw_status = order.get("status")

        cost = order.get("shipping_charges")
        return CarrierShipmentResult(
            carrier_shipment_id=sr_order_id,
            tracking_number=awb or f"SR{sr_order_id}",
            tracking_number_is_placeholder=awb is None,
            status=self.map_status(raw_status),
            cost=float(cost) if cost not in (None, "") else None,
            currency="INR",
            estimated_delivery=parse_date(order.get("delivery_date")),
            tracking_url=self.get_tracking_url(awb) if awb else None,
            label_url=order.get("label_url") or None,
            raw_status=raw_status,
            metadata={
                "shiprocket_order_id": order.get("order_id"),
                "shiprocket_shipment_id": order.get("shipment_id"),
                "awb_code": awb,
                "status": raw_status,
                "courier_name": order.get("courier_name"),
                "courier_id": order.get("courier_id"),
            },
        )

    def _build_order_payload(self, request: ShippingRequest) -> Dict[str, Any]:
        dest = request.destination
        first_name, _, last_name = dest.name.strip().partition(" ")
        today = date.today()

        return {
            "order_id": request.order_id,
            "order_date": today.isoformat(),
            "pickup_location": self.config.extras.get("pickup_location") or "Primary",
            "billing_customer_name": first_name,
            "billing_last_name": last_name,
            "billing_address": dest.address1,
            "billing_address_2": dest.address2 or "",
            "billing_city": dest.city,
            "billing_pincode": dest.postal_code,
            "billing_state": dest.state or "",
            "billing_country": dest.country,
            "billing_phone": dest.phone or "",
            "billing_email": dest.email or "",
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.name,
                    "sku": item.sku or item.id,
                    "units": item.quantity,
                    "selling_price": item.value,
                    "discount": 0,
                    "tax": 0,
                }
                for item in request.items
            ],
            "payment_method": "Prepaid",
            "sub_total": request.value,
            "length": request.dimensions.length,
            "breadth": request.dimensions.width,
            "height": request.dimensions.height,
            "weight": request.weight / 1000,  # grams -> kg
            "delivery_date": estimated_delivery_date(request.method, today).isoformat(),
            "priority": PRIORITY_MAP.get(request.method, "Normal"),
            "comment": request.instructions or "",
        }
