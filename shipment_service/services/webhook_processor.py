"""
Webhook Processor

Inbound carrier webhooks:
1. Normalize the body into an envelope (never fails, even on garbage)
2. Verify the HMAC signature over the exact raw bytes
3. Persist the audit row before acting on it
4. Apply at most once per (carrier, webhook id)
"""
import logging
from dataclasses import dataclass
from typing import Optional

from shipment_service.core.exceptions import (
    InvalidWebhookSignatureError,
    ShipmentServiceError,
    log_level_for,
)
from shipment_service.core.locks import KeyedLockManager
from shipment_service.core.monitoring import MetricsCollector, metrics as default_metrics
from shipment_service.modules.shipping.carriers.base import BaseCarrier
from shipment_service.services.shipment_repository import ShipmentStore

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    accepted: bool
    webhook_id: Optional[str] = None
    duplicate: bool = False


def signature_from_headers(headers, carrier_header: Optional[str] = None) -> Optional[str]:
    """Pick the signature out of request headers. Lookups are case-insensitive."""
    for name in (carrier_header, "X-Signature", "Signature"):
        if name and headers.get(name):
            return headers.get(name)
    return None


class WebhookProcessor:
    """
    Verifies, records and applies carrier webhooks.

    `applier` is anything with `async apply_tracking_event(envelope)`;
    in the service that is the ShippingService itself.
    """

    def __init__(
        self,
        store: ShipmentStore,
        applier,
        locks: Optional[KeyedLockManager] = None,
        collector: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.applier = applier
        self.locks = locks or KeyedLockManager()
        self.metrics = collector or default_metrics

    async def handle(self, adapter: BaseCarrier, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Process one delivery.

        Raises:
            InvalidWebhookSignatureError: after the attempt has been recorded
        """
        envelope = adapter.process_webhook(raw_body, signature)
        signature_valid = adapter.validate_webhook(raw_body, signature)
        if not signature_valid:
            envelope.error = "Invalid signature"

        async with self.locks.hold(f"{envelope.carrier}:{envelope.id}"):
            row, created = await self.store.record_webhook(envelope, signature_valid)

            if not signature_valid:
                self._count(adapter.carrier_code, "invalid_signature")
                logger.warning(
                    f"Rejected {adapter.carrier_code} webhook {envelope.id}: "
                    f"{'missing' if not signature else 'invalid'} signature"
                )
                raise InvalidWebhookSignatureError(adapter.carrier_code, envelope.id)

            if row.processed:
                self._count(adapter.carrier_code, "duplicate")
                logger.info(f"Duplicate {adapter.carrier_code} webhook {envelope.id} ignored")
                return WebhookResult(accepted=True, webhook_id=envelope.id, duplicate=True)

            if not created:
                logger.info(f"Retrying {adapter.carrier_code} webhook {envelope.id} (attempt {row.retry_count + 1})")

            if envelope.is_malformed or envelope.error:
                await self.store.mark_webhook(envelope.carrier, envelope.id, processed=False, error=envelope.error)
                self._count(adapter.carrier_code, "rejected")
                logger.warning(f"Unusable {adapter.carrier_code} webhook {envelope.id}: {envelope.error}")
                return WebhookResult(accepted=False, webhook_id=envelope.id)

            try:
                shipment = await self.applier.apply_tracking_event(envelope)
            except ShipmentServiceError as e:
                await self.store.mark_webhook(envelope.carrier, envelope.id, processed=False, error=e.message)
                self._count(adapter.carrier_code, "failed")
                logger.log(
                    log_level_for(e),
                    f"Could not apply {adapter.carrier_code} webhook {envelope.id}: {e.code}: {e.message}",
                )
                return WebhookResult(accepted=False, webhook_id=envelope.id)

            await self.store.mark_webhook(envelope.carrier, envelope.id, processed=True)

        self._count(adapter.carrier_code, "processed")
        logger.info(
            f"Applied {adapter.carrier_code} webhook {envelope.id} ({envelope.event}) "
            f"to shipment {shipment.id}: status={shipment.status}"
        )
        return WebhookResult(accepted=True, webhook_id=envelope.id)

    def _count(self, carrier: str, outcome: str) -> None:
        self.metrics.increment("shipping_webhooks_total", labels={"carrier": carrier, "outcome": outcome})
