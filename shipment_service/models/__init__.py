from shipment_service.models.shipment import (
    Shipment,
    ShipmentStatus,
    ShipmentTrackingUpdate,
    ShippingWebhookLog,
)

__all__ = ["Shipment", "ShipmentStatus", "ShipmentTrackingUpdate", "ShippingWebhookLog"]
