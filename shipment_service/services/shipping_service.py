"""
Shipping Service

Orchestrates shipment operations across regional carriers:
- Validates requests and enforces one live shipment per order
- Resolves region -> carrier adapter
- Persists shipment state and decides every status transition
- Requests order status changes from the order service
- Emits metrics and correlated logs for every operation
"""
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from shipment_service.core.exceptions import (
    ErrorKind,
    OrderNotFoundError,
    ShipmentExistsError,
    ShipmentNotFoundError,
    ShipmentServiceError,
    ShippingProviderError,
    ShippingValidationError,
    UnsupportedRegionError,
    log_level_for,
)
from shipment_service.core.locks import OrderLockManager
from shipment_service.core.monitoring import MetricsCollector, metrics as default_metrics
from shipment_service.core.request_context import current_or_new_correlation_id
from shipment_service.models.shipment import Shipment, ShipmentStatus, generate_shipment_id
from shipment_service.modules.shipping.carriers import AdapterRegistry
from shipment_service.modules.shipping.carriers.base import (
    BaseCarrier,
    CarrierShipmentResult,
    Rate,
    TrackingUpdate,
    WebhookEnvelope,
)
from shipment_service.modules.shipping.regions import RegionResolver
from shipment_service.modules.shipping.status import (
    CANCELLABLE_STATUSES,
    ORDER_STATUS_ON_TRANSITION,
    TransitionOutcome,
    decide_transition,
)
from shipment_service.schemas.shipping import RateQuoteRequest, ShippingRequest
from shipment_service.services.order_gateway import OrderGateway
from shipment_service.services.shipment_repository import ShipmentStore, tracking_update_from_row
from shipment_service.services.webhook_processor import WebhookProcessor, WebhookResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParcelLimits:
    """Carrier-side parcel limits."""
    max_weight_grams: float = 50000
    max_length_cm: float = 120
    max_width_cm: float = 80
    max_height_cm: float = 60

    @classmethod
    def from_settings(cls, settings) -> "ParcelLimits":
        return cls(
            max_weight_grams=settings.SHIPPING_MAX_WEIGHT_GRAMS,
            max_length_cm=settings.SHIPPING_MAX_LENGTH_CM,
            max_width_cm=settings.SHIPPING_MAX_WIDTH_CM,
            max_height_cm=settings.SHIPPING_MAX_HEIGHT_CM,
        )


def validate_shipping_request(request: ShippingRequest, limits: ParcelLimits = ParcelLimits()) -> None:
    """
    Check request invariants before anything is written or sent.

    Raises:
        ShippingValidationError: naming the first violated field
    """
    if not (request.order_id or "").strip():
        raise ShippingValidationError("order_id", "Order id is required")

    if not request.weight > 0:
        raise ShippingValidationError("weight", "Weight must be greater than 0")
    if request.weight > limits.max_weight_grams:
        raise ShippingValidationError(
            "weight", f"Weight exceeds carrier maximum of {limits.max_weight_grams:g}g",
        )

    dims = request.dimensions
    for name, value, maximum in (
        ("length", dims.length, limits.max_length_cm),
        ("width", dims.width, limits.max_width_cm),
        ("height", dims.height, limits.max_height_cm),
    ):
        if not value > 0:
            raise ShippingValidationError(f"dimensions.{name}", f"{name.capitalize()} must be greater than 0")
        if value > maximum:
            raise ShippingValidationError(
                f"dimensions.{name}", f"{name.capitalize()} exceeds carrier maximum of {maximum:g}cm",
            )

    if not request.value > 0:
        raise ShippingValidationError("value", "Declared value must be greater than 0")

    for label, address in (("origin", request.origin), ("destination", request.destination)):
        missing = address.missing_fields()
        if missing:
            raise ShippingValidationError(f"{label}.{missing[0]}", f"{label.capitalize()} address is incomplete")

    for i, item in enumerate(request.items):
        if item.quantity <= 0:
            raise ShippingValidationError(f"items.{i}.quantity", "Quantity must be greater than 0")


class ShippingService:
    """
    Shipment orchestrator.

    The only component that moves a shipment between statuses. Adapters
    report what the carrier says; this class decides whether to apply it.
    """

    def __init__(
        self,
        store: ShipmentStore,
        registry: AdapterRegistry,
        orders: OrderGateway,
        mode: str = "sandbox",
        resolver: Optional[RegionResolver] = None,
        collector: Optional[MetricsCollector] = None,
        limits: Optional[ParcelLimits] = None,
        order_locks: Optional[OrderLockManager] = None,
    ):
        self.store = store
        self.registry = registry
        self.orders = orders
        self.mode = mode
        self.resolver = resolver or RegionResolver()
        self.metrics = collector or default_metrics
        self.limits = limits or ParcelLimits()
        self.order_locks = order_locks or OrderLockManager()
        self.webhooks = WebhookProcessor(store, self, collector=self.metrics)

    # =========================================================================
    # Create
    # =========================================================================

    async def create_shipment(self, request: ShippingRequest) -> Shipment:
        """
        Create a shipment for an order.

        The pending record is inserted under the order lock before the
        carrier is called; the carrier round-trip happens outside it. A
        timeout leaves the record pending with no tracking number.

        Raises:
            ShippingValidationError, OrderNotFoundError, ShipmentExistsError,
            UnsupportedRegionError, ShippingProviderError, ShippingTimeoutError
        """
        trace_id = current_or_new_correlation_id()
        started = time.perf_counter()

        try:
            validate_shipping_request(request, self.limits)
        except ShippingValidationError as e:
            logger.info(f"[{trace_id}] Rejected shipment for order {request.order_id}: {e.details.get('field')}: {e.message}")
            raise

        region = self.resolver.resolve_from_destination(request.destination.country)
        method = request.method.value
        carrier = "unknown"

        try:
            order = await self.orders.get_order(request.order_id)
            if order is None:
                raise OrderNotFoundError(request.order_id)
            if order.shipped:
                raise ShipmentExistsError(request.order_id)

            adapter = self.registry.get_adapter(region, self.mode)
            carrier = adapter.carrier_code

            async with self.order_locks.hold(request.order_id):
                existing = await self.store.get_live_by_order(request.order_id)
                if existing is not None:
                    raise ShipmentExistsError(request.order_id, existing.id)
                shipment = await self.store.insert_pending(
                    self._new_shipment(request, carrier, region)
                )

            logger.info(
                f"[{trace_id}] Shipment {shipment.id} pending for order {request.order_id} "
                f"via {carrier} ({region}/{self.mode})"
            )

            try:
                result = await adapter.create_shipment(request)
            except ShippingProviderError:
                # Carrier refused outright and holds no state; free the order for a retry
                await self.store.delete(shipment.id)
                raise

            self._apply_carrier_result(shipment, result)
            shipment = await self.store.save(shipment)

        except ShipmentServiceError as e:
            self._record_failure("create_shipment", e, trace_id, carrier, region, request.order_id)
            raise

        labels = {"carrier": carrier, "region": region, "method": method}
        self.metrics.increment("shipments_created_total", labels=labels)
        self.metrics.observe("shipment_create_duration_seconds", time.perf_counter() - started, labels)

        logger.info(
            f"[{trace_id}] Created shipment {shipment.id} for order {request.order_id}: "
            f"tracking={shipment.tracking_number} placeholder={shipment.tracking_number_is_placeholder}"
        )

        await self._request_order_status(shipment, "processing", trace_id)
        return shipment

    def _new_shipment(self, request: ShippingRequest, carrier: str, region: str) -> Shipment:
        return Shipment(
            id=generate_shipment_id(),
            order_id=request.order_id,
            carrier=carrier,
            region=region,
            method=request.method.value,
            destination_country=request.destination.country,
            status=ShipmentStatus.PENDING.value,
            tracking_number=None,
            tracking_number_is_placeholder=False,
            currency=request.currency,
            carrier_metadata={},
        )

    # =========================================================================
    # Status / tracking
    # =========================================================================

    async def get_shipment(self, shipment_id: str) -> Shipment:
        """Stored shipment, without asking the carrier."""
        return await self._load(shipment_id, "get_shipment", current_or_new_correlation_id())

    async def _load(self, shipment_id: str, operation: str, trace_id: str) -> Shipment:
        shipment = await self.store.get_by_id(shipment_id)
        if shipment is None:
            error = ShipmentNotFoundError(shipment_id)
            self._record_failure(operation, error, trace_id, None, None, None)
            raise error
        return shipment

    async def get_shipment_status(self, shipment_id: str) -> Shipment:
        """Poll the carrier and persist the refreshed shipment."""
        trace_id = current_or_new_correlation_id()
        shipment = await self._load(shipment_id, "get_shipment_status", trace_id)

        if not shipment.carrier_shipment_id:
            # Create timed out before the carrier answered
            logger.warning(
                f"[{trace_id}] Shipment {shipment.id} has no carrier reference yet; returning stored state"
            )
            return shipment

        try:
            adapter = self._adapter_for(shipment)
            result = await adapter.get_shipment_status(shipment.carrier_shipment_id)
        except ShipmentServiceError as e:
            self._record_failure("get_shipment_status", e, trace_id, shipment.carrier, shipment.region, shipment.order_id)
            raise

        previous = ShipmentStatus(shipment.status)
        self._apply_carrier_result(shipment, result)
        shipment = await self.store.save(shipment)
        await self._after_transition(shipment, previous, trace_id)
        return shipment

    async def track_shipment(self, tracking_number: str) -> List[TrackingUpdate]:
        """
        Fetch the carrier's event history, persist it, return it oldest first.

        A placeholder number is never sent to the carrier. The shipment is
        polled first to pick up the real AWB; while it has none, the stored
        history is returned.
        """
        trace_id = current_or_new_correlation_id()
        shipment = await self.store.get_by_tracking_number(tracking_number)
        if shipment is None:
            error = ShipmentNotFoundError(tracking_number)
            self._record_failure("track_shipment", error, trace_id, None, None, None)
            raise error

        if shipment.tracking_number_is_placeholder and shipment.carrier_shipment_id:
            shipment = await self.get_shipment_status(shipment.id)
        if shipment.tracking_number_is_placeholder:
            logger.info(
                f"[{trace_id}] {tracking_number} has no carrier tracking number yet; returning stored history"
            )
            rows = await self.store.list_tracking_updates(shipment.id)
            return [tracking_update_from_row(row) for row in rows]

        tracking_number = shipment.tracking_number
        try:
            adapter = self._adapter_for(shipment)
            updates = await adapter.track_shipment(tracking_number)
        except ShipmentServiceError as e:
            self._record_failure("track_shipment", e, trace_id, shipment.carrier, shipment.region, shipment.order_id)
            raise

        updates = sorted(updates, key=lambda u: u.timestamp)
        added = await self.store.add_tracking_updates(shipment.id, updates)
        logger.info(f"[{trace_id}] Tracking {tracking_number}: {len(updates)} events, {added} new")
        return updates

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel_shipment(self, shipment_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a shipment at the carrier.

        Only a confirmed cancellation moves the record to cancelled and the
        order to "cancelled". A carrier rejection propagates and changes
        nothing. Cancelling a cancelled shipment is a no-op returning True.
        """
        trace_id = current_or_new_correlation_id()
        shipment = await self._load(shipment_id, "cancel_shipment", trace_id)
        current = ShipmentStatus(shipment.status)

        if current == ShipmentStatus.CANCELLED:
            return True
        if current not in CANCELLABLE_STATUSES:
            raise ShippingValidationError("status", f"Shipment in status {current.value} cannot be cancelled")
        if not shipment.carrier_shipment_id:
            raise ShippingValidationError(
                "carrier_shipment_id",
                "Shipment has no carrier reference yet; refresh its status before cancelling",
            )

        try:
            adapter = self._adapter_for(shipment)
            cancelled = await adapter.cancel_shipment(shipment.carrier_shipment_id, reason)
        except ShipmentServiceError as e:
            self._record_failure("cancel_shipment", e, trace_id, shipment.carrier, shipment.region, shipment.order_id)
            raise

        if not cancelled:
            logger.warning(f"[{trace_id}] {shipment.carrier} declined cancellation of {shipment.id}")
            return False

        self._transition(shipment, ShipmentStatus.CANCELLED, "cancel")
        shipment.carrier_metadata = {**(shipment.carrier_metadata or {}), "cancel_reason": reason}
        shipment = await self.store.save(shipment)
        logger.info(f"[{trace_id}] Cancelled shipment {shipment.id} for order {shipment.order_id}")

        await self._request_order_status(shipment, "cancelled", trace_id)
        return True

    # =========================================================================
    # Rates
    # =========================================================================

    async def get_shipping_rates(self, request: RateQuoteRequest) -> List[Rate]:
        """Quote rates for the region of the (possibly missing) destination. No persistence."""
        trace_id = current_or_new_correlation_id()
        region = self.resolver.resolve_from_destination(request.destination_country)
        carrier = "unknown"
        try:
            adapter = self.registry.get_adapter(region, self.mode)
            carrier = adapter.carrier_code
            rates = await adapter.get_shipping_rates(request)
        except ShipmentServiceError as e:
            self._record_failure("get_shipping_rates", e, trace_id, carrier, region, None)
            raise
        return sorted(rates, key=lambda r: r.cost)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def adapter_for_carrier(self, carrier: str) -> BaseCarrier:
        """
        Adapter whose credentials verify webhooks from `carrier`.

        Raises:
            UnsupportedRegionError: the carrier's region is served by a
                different carrier, so its secret must not be used
        """
        carrier = (carrier or "").strip().lower().replace("-", "_")
        region = self.resolver.resolve_from_carrier(carrier)
        if not self.resolver.is_known_carrier(carrier):
            logger.warning(f"Webhook from unmapped carrier {carrier}; defaulting to region {region}")

        adapter = self.registry.get_adapter(region, self.mode)
        if adapter.carrier_code != carrier:
            raise UnsupportedRegionError(
                region,
                self.mode,
                message=f"Region {region} is served by {adapter.carrier_code}, not {carrier}",
            )
        return adapter

    async def process_webhook(self, carrier: str, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, persist and apply an inbound carrier webhook."""
        trace_id = current_or_new_correlation_id()
        try:
            adapter = self.adapter_for_carrier(carrier)
        except ShipmentServiceError as e:
            self._record_failure("process_webhook", e, trace_id, carrier, None, None)
            raise
        try:
            return await self.webhooks.handle(adapter, raw_body, signature)
        except ShipmentServiceError as e:
            self._record_failure("process_webhook", e, trace_id, adapter.carrier_code, adapter.region, None)
            raise

    async def apply_tracking_event(self, envelope: WebhookEnvelope) -> Shipment:
        """
        Apply a verified webhook to its shipment.

        Raises:
            ShipmentNotFoundError: no shipment matches the carrier reference or tracking number
        """
        trace_id = current_or_new_correlation_id()
        shipment = None
        if envelope.carrier_shipment_id:
            shipment = await self.store.get_by_carrier_reference(envelope.carrier, envelope.carrier_shipment_id)
        if shipment is None and envelope.tracking_number:
            shipment = await self.store.get_by_tracking_number(envelope.tracking_number)
        if shipment is None:
            error = ShipmentNotFoundError(envelope.carrier_shipment_id or envelope.tracking_number or envelope.id)
            self._record_failure("apply_tracking_event", error, trace_id, envelope.carrier, None, None)
            raise error

        if envelope.tracking_number and shipment.tracking_number_is_placeholder:
            adapter = self._adapter_for(shipment)
            shipment.tracking_number = envelope.tracking_number
            shipment.tracking_number_is_placeholder = False
            shipment.tracking_url = adapter.get_tracking_url(envelope.tracking_number)

        if envelope.update is not None:
            if not envelope.update.tracking_number:
                envelope.update.tracking_number = shipment.tracking_number
            await self.store.add_tracking_updates(shipment.id, [envelope.update])

        previous = ShipmentStatus(shipment.status)
        if envelope.status is not None:
            self._transition(shipment, envelope.status, "webhook")

        shipment = await self.store.save(shipment)
        await self._after_transition(shipment, previous, trace_id)
        return shipment

    # =========================================================================
    # Internals
    # =========================================================================

    def _adapter_for(self, shipment: Shipment) -> BaseCarrier:
        """Adapter for an existing shipment, re-resolved from its destination."""
        region = self.resolver.resolve_from_destination(shipment.destination_country)
        adapter = self.registry.get_adapter(region, self.mode)
        if adapter.carrier_code != shipment.carrier:
            raise UnsupportedRegionError(
                region,
                self.mode,
                message=f"Shipment {shipment.id} was created with {shipment.carrier}, "
                        f"region {region} is now served by {adapter.carrier_code}",
            )
        return adapter

    def _apply_carrier_result(self, shipment: Shipment, result: CarrierShipmentResult) -> None:
        shipment.carrier_shipment_id = result.carrier_shipment_id
        # Never replace a real tracking number with a placeholder
        if result.tracking_number and (
            not result.tracking_number_is_placeholder
            or not shipment.tracking_number
            or shipment.tracking_number_is_placeholder
        ):
            shipment.tracking_number = result.tracking_number
            shipment.tracking_number_is_placeholder = result.tracking_number_is_placeholder
        if result.tracking_url:
            shipment.tracking_url = result.tracking_url
        if result.label_url:
            shipment.label_url = result.label_url
        if result.cost is not None:
            shipment.cost = result.cost
        if result.currency:
            shipment.currency = result.currency
        if result.estimated_delivery is not None:
            shipment.estimated_delivery = result.estimated_delivery
        shipment.carrier_metadata = {**(shipment.carrier_metadata or {}), **(result.metadata or {})}
        self._transition(shipment, result.status, "carrier")

    def _transition(self, shipment: Shipment, new_status: ShipmentStatus, source: str) -> TransitionOutcome:
        current = ShipmentStatus(shipment.status)
        new_status = ShipmentStatus(new_status)
        outcome = decide_transition(current, new_status)

        self.metrics.increment(
            "shipping_status_transitions_total",
            labels={"from_status": current.value, "to_status": new_status.value, "outcome": outcome.value},
        )
        if outcome == TransitionOutcome.APPLIED:
            shipment.status = new_status.value
            logger.info(f"Shipment {shipment.id}: {current.value} -> {new_status.value} ({source})")
        elif outcome == TransitionOutcome.REJECTED:
            logger.info(
                f"Shipment {shipment.id}: ignored {source} status {new_status.value} while {current.value}"
            )
        return outcome

    async def _after_transition(self, shipment: Shipment, previous: ShipmentStatus, trace_id: str) -> None:
        current = ShipmentStatus(shipment.status)
        if current == previous or current == ShipmentStatus.CANCELLED:
            return
        order_status = ORDER_STATUS_ON_TRANSITION.get(current)
        if order_status:
            await self._request_order_status(shipment, order_status, trace_id)

    async def _request_order_status(self, shipment: Shipment, status: str, trace_id: str) -> None:
        """Ask the order service for a status change. Failures are logged, not raised."""
        try:
            await self.orders.update_order_status(
                shipment.order_id,
                status,
                shipment_id=shipment.id,
                tracking_number=shipment.tracking_number,
            )
        except ShipmentServiceError as e:
            self.metrics.increment("order_status_update_failures_total", labels={"status": status})
            logger.error(
                f"[{trace_id}] Could not move order {shipment.order_id} to {status} "
                f"after shipment {shipment.id}: {e.message}"
            )

    def _record_failure(
        self,
        operation: str,
        error: ShipmentServiceError,
        trace_id: str,
        carrier: Optional[str],
        region: Optional[str],
        order_id: Optional[str],
    ) -> None:
        logger.log(
            log_level_for(error),
            f"[{trace_id}] {operation} failed order={order_id} carrier={carrier} region={region}: "
            f"{error.kind.value} {error.code}: {error.message}",
        )
        if error.kind != ErrorKind.VALIDATION:
            self.metrics.increment(
                "shipping_operation_failures_total",
                labels={
                    "operation": operation,
                    "carrier": carrier or "unknown",
                    "region": region or "unknown",
                    "error_kind": error.kind.value,
                },
            )
