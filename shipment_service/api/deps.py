"""
API dependencies
"""
from fastapi import HTTPException, Request, status

from shipment_service.services.shipping_service import ShippingService


async def get_shipping_service(request: Request) -> ShippingService:
    """Orchestrator built in the application lifespan."""
    service = getattr(request.app.state, "shipping_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Shipping service is not ready",
        )
    return service
