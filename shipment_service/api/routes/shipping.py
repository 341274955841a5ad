"""
Shipping API Routes

Provides endpoints for:
- Shipment creation
- Status (stored or refreshed from the carrier)
- Tracking history
- Cancellation
- Rate quotes and supported regions

Taxonomy errors raised by the orchestrator are turned into responses by the
registered exception handler; routes do not catch them.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from shipment_service.api.deps import get_shipping_service
from shipment_service.modules.shipping.regions import REGIONS
from shipment_service.schemas.shipping import (
    CancelShipmentRequest,
    CancelShipmentResponse,
    RateQuoteRequest,
    RegionResponse,
    ShippingRateResponse,
    ShippingRequest,
    ShippingResponse,
    ShippingUpdateResponse,
)
from shipment_service.services.shipping_service import ShippingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipments", tags=["Shipments"])


@router.post("", response_model=ShippingResponse, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    request: ShippingRequest,
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Create a shipment for an order.

    The destination country selects the region and therefore the carrier.
    """
    shipment = await service.create_shipment(request)
    return ShippingResponse.model_validate(shipment)


@router.post("/rates", response_model=List[ShippingRateResponse])
async def get_shipping_rates(
    request: RateQuoteRequest,
    service: ShippingService = Depends(get_shipping_service),
):
    """Quote rates, cheapest first. Missing fields fall back to carrier defaults."""
    rates = await service.get_shipping_rates(request)
    return [
        ShippingRateResponse(
            carrier=r.carrier,
            method=r.method,
            cost=r.cost,
            currency=r.currency,
            estimated_days=r.estimated_days,
            description=r.description,
            is_available=r.is_available,
        )
        for r in rates
    ]


@router.get("/regions", response_model=List[RegionResponse])
async def list_regions(service: ShippingService = Depends(get_shipping_service)):
    """Regions known to the service; `active` means a carrier is configured in the current mode."""
    return [
        RegionResponse(
            code=info.code,
            name=info.name,
            currency=info.currency,
            carrier=info.carrier,
            active=info.active and service.registry.supports(info.code, service.mode),
        )
        for info in REGIONS.values()
    ]


@router.get("/track/{tracking_number}", response_model=List[ShippingUpdateResponse])
async def track_shipment(
    tracking_number: str,
    service: ShippingService = Depends(get_shipping_service),
):
    """Carrier event history for a tracking number, oldest first."""
    updates = await service.track_shipment(tracking_number)
    return [
        ShippingUpdateResponse(
            tracking_number=u.tracking_number or tracking_number,
            status=u.status,
            location=u.location,
            description=u.description,
            carrier_timestamp=u.timestamp,
            carrier_metadata=u.metadata,
        )
        for u in updates
    ]


@router.get("/{shipment_id}", response_model=ShippingResponse)
async def get_shipment(
    shipment_id: str,
    refresh: bool = Query(True, description="Poll the carrier before answering"),
    service: ShippingService = Depends(get_shipping_service),
):
    if refresh:
        shipment = await service.get_shipment_status(shipment_id)
    else:
        shipment = await service.get_shipment(shipment_id)
    return ShippingResponse.model_validate(shipment)


@router.post("/{shipment_id}/cancel", response_model=CancelShipmentResponse)
async def cancel_shipment(
    shipment_id: str,
    body: Optional[CancelShipmentRequest] = None,
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Cancel a pending or packed shipment.

    `cancelled` is false when the carrier declined without an error; the
    shipment is then left unchanged.
    """
    cancelled = await service.cancel_shipment(shipment_id, body.reason if body else None)
    shipment = await service.get_shipment(shipment_id)
    return CancelShipmentResponse(cancelled=cancelled, shipment_id=shipment.id, status=shipment.status)
