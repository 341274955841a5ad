"""
Webhook Routes

Carrier status callbacks. The signature is checked against the exact raw
body, so the body is read as bytes and never re-serialized.
"""
import logging

from fastapi import APIRouter, Depends, Request

from shipment_service.api.deps import get_shipping_service
from shipment_service.schemas.shipping import WebhookAck
from shipment_service.services.shipping_service import ShippingService
from shipment_service.services.webhook_processor import signature_from_headers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{carrier}", response_model=WebhookAck)
async def handle_carrier_webhook(
    carrier: str,
    request: Request,
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Handle a carrier webhook.

    200 with accepted=false means the delivery was recorded but could not be
    applied (unparseable, or no matching shipment); 401 means the signature
    did not verify. Both are persisted.
    """
    body = await request.body()
    adapter = service.adapter_for_carrier(carrier)
    signature = signature_from_headers(request.headers, adapter.signature_header)

    result = await service.process_webhook(carrier, body, signature)
    return WebhookAck(accepted=result.accepted, webhook_id=result.webhook_id, duplicate=result.duplicate)
