"""
Shipping Schemas

Pydantic models for shipping API requests and responses.

Numeric invariants (weight, dimensions, declared value, carrier limits) are
enforced by the orchestrator, not here, so every entry point reports them the
same way and nothing is written before they are checked.
"""
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shipment_service.models.shipment import ShipmentStatus
from shipment_service.modules.shipping.regions import ShippingMethod


# ==================== Address Schemas ====================


class Address(BaseModel):
    """Postal address. Structural completeness is checked by the orchestrator."""
    name: str = ""
    address1: str = ""
    address2: Optional[str] = None
    city: str = ""
    state: Optional[str] = None
    postal_code: str = ""
    country: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None

    @field_validator("country")
    @classmethod
    def validate_country_code(cls, v):
        return (v or "").strip().upper()

    def missing_fields(self) -> List[str]:
        required = ("name", "address1", "city", "postal_code", "country")
        return [f for f in required if not (getattr(self, f) or "").strip()]


# ==================== Parcel Schemas ====================


class Dimensions(BaseModel):
    """Parcel dimensions in centimetres."""
    length: float
    width: float
    height: float


class LineItem(BaseModel):
    id: str
    name: str
    quantity: int = 1
    value: float = Field(0, description="Unit value")
    sku: Optional[str] = None


# ==================== Request Schemas ====================


class ShippingRequest(BaseModel):
    """Create a shipment for an order."""
    order_id: str
    origin: Address
    destination: Address
    weight: float = Field(..., description="Parcel weight in grams")
    dimensions: Dimensions
    value: float = Field(..., description="Declared value")
    currency: str = "INR"
    items: List[LineItem] = []
    method: ShippingMethod = ShippingMethod.STANDARD
    instructions: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        return v.upper()


class RateQuoteRequest(BaseModel):
    """
    Partial request used for pre-checkout estimates.

    Every field is optional; carriers fill in their own defaults.
    """
    origin: Optional[Address] = None
    destination: Optional[Address] = None
    weight: Optional[float] = Field(None, description="Parcel weight in grams")
    dimensions: Optional[Dimensions] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    method: Optional[ShippingMethod] = None

    @property
    def destination_country(self) -> Optional[str]:
        return self.destination.country if self.destination else None


class CancelShipmentRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ==================== Response Schemas ====================


class ShippingResponse(BaseModel):
    """A shipment as stored."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    carrier: str
    region: str
    method: str
    status: ShipmentStatus
    tracking_number: Optional[str] = None
    tracking_number_is_placeholder: bool = False
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    carrier_shipment_id: Optional[str] = None
    cost: Optional[float] = None
    currency: Optional[str] = None
    estimated_delivery: Optional[date] = None
    carrier_metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ShippingUpdateResponse(BaseModel):
    """One tracking event."""
    model_config = ConfigDict(from_attributes=True)

    shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    status: ShipmentStatus
    location: Optional[str] = None
    description: str = ""
    carrier_timestamp: datetime
    carrier_metadata: Dict[str, Any] = {}


class ShippingRateResponse(BaseModel):
    carrier: str
    method: ShippingMethod
    cost: float
    currency: str
    estimated_days: int
    description: str
    is_available: bool = True


class CancelShipmentResponse(BaseModel):
    cancelled: bool
    shipment_id: str
    status: ShipmentStatus


class WebhookAck(BaseModel):
    accepted: bool
    webhook_id: Optional[str] = None
    duplicate: bool = False


class RegionResponse(BaseModel):
    code: str
    name: str
    currency: str
    carrier: str
    active: bool
