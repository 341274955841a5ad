"""
Shipment store.

ShipmentStore is the persistence contract shared by the orchestrator and the
webhook processor. ShipmentRepository implements it on SQLAlchemy with one
short unit of work per call. Writes are shielded from caller cancellation so
a disconnected client cannot leave a half-written record.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError

from shipment_service.core.database import AsyncSessionLocal
from shipment_service.core.exceptions import ShipmentExistsError
from shipment_service.models.shipment import (
    Shipment,
    ShipmentStatus,
    ShipmentTrackingUpdate,
    ShippingWebhookLog,
)
from shipment_service.modules.shipping.carriers.base import TrackingUpdate, WebhookEnvelope

logger = logging.getLogger(__name__)


class ShipmentStore(ABC):
    """Persistence operations used by the shipping services."""

    # ==================== Shipments ====================

    @abstractmethod
    async def get_by_id(self, shipment_id: str) -> Optional[Shipment]:
        pass

    @abstractmethod
    async def get_live_by_order(self, order_id: str) -> Optional[Shipment]:
        """Non-cancelled shipment for the order, if any."""
        pass

    @abstractmethod
    async def get_by_tracking_number(self, tracking_number: str) -> Optional[Shipment]:
        pass

    @abstractmethod
    async def get_by_carrier_reference(self, carrier: str, carrier_shipment_id: str) -> Optional[Shipment]:
        pass

    @abstractmethod
    async def insert_pending(self, shipment: Shipment) -> Shipment:
        """
        Insert a new pending shipment.

        Raises:
            ShipmentExistsError: the order already has a live shipment
        """
        pass

    @abstractmethod
    async def save(self, shipment: Shipment) -> Shipment:
        pass

    @abstractmethod
    async def delete(self, shipment_id: str) -> None:
        pass

    # ==================== Tracking ====================

    @abstractmethod
    async def add_tracking_updates(self, shipment_id: str, updates: Iterable[TrackingUpdate]) -> int:
        """Append updates, skipping ones already stored. Returns how many were new."""
        pass

    @abstractmethod
    async def list_tracking_updates(self, shipment_id: str) -> List[ShipmentTrackingUpdate]:
        """History ordered by carrier timestamp."""
        pass

    # ==================== Webhooks ====================

    @abstractmethod
    async def record_webhook(self, envelope: WebhookEnvelope, signature_valid: bool) -> Tuple[ShippingWebhookLog, bool]:
        """
        Persist an inbound webhook.

        Identity is (carrier, id). A redelivery of an unprocessed webhook
        bumps its retry_count.

        Returns:
            (stored row, True if this call created it)
        """
        pass

    @abstractmethod
    async def mark_webhook(self, carrier: str, webhook_id: str, processed: bool, error: Optional[str] = None) -> None:
        pass


def tracking_row(shipment_id: str, update: TrackingUpdate) -> dict:
    return {
        "shipment_id": shipment_id,
        "tracking_number": update.tracking_number or None,
        "status": ShipmentStatus(update.status).value,
        "location": update.location,
        "description": update.description or "",
        "carrier_timestamp": update.timestamp,
        "carrier_metadata": update.metadata or {},
    }


def tracking_update_from_row(row: ShipmentTrackingUpdate) -> TrackingUpdate:
    return TrackingUpdate(
        tracking_number=row.tracking_number or "",
        status=ShipmentStatus(row.status),
        timestamp=row.carrier_timestamp,
        description=row.description or "",
        location=row.location,
        metadata=dict(row.carrier_metadata or {}),
    )


def webhook_row(envelope: WebhookEnvelope, signature_valid: bool) -> dict:
    return {
        "id": envelope.id,
        "carrier": envelope.carrier,
        "event": envelope.event,
        "payload": envelope.payload,
        "raw_body": envelope.raw_body,
        "signature": envelope.signature,
        "signature_valid": signature_valid,
        "received_at": envelope.received_at,
        "processed": False,
        "retry_count": envelope.retry_count,
        "error": envelope.error,
    }


def _webhook_key(envelope: WebhookEnvelope) -> dict:
    return {"carrier": envelope.carrier, "id": envelope.id}


class ShipmentRepository(ShipmentStore):
    """SQLAlchemy implementation of ShipmentStore."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    # ==================== Shipments ====================

    async def get_by_id(self, shipment_id: str) -> Optional[Shipment]:
        async with self._session_factory() as session:
            return await session.get(Shipment, shipment_id)

    async def get_live_by_order(self, order_id: str) -> Optional[Shipment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Shipment)
                .where(Shipment.order_id == order_id)
                .where(Shipment.status != ShipmentStatus.CANCELLED.value)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_by_tracking_number(self, tracking_number: str) -> Optional[Shipment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Shipment)
                .where(Shipment.tracking_number == tracking_number)
                .order_by(Shipment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_by_carrier_reference(self, carrier: str, carrier_shipment_id: str) -> Optional[Shipment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Shipment)
                .where(Shipment.carrier == carrier)
                .where(Shipment.carrier_shipment_id == carrier_shipment_id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def insert_pending(self, shipment: Shipment) -> Shipment:
        return await asyncio.shield(self._insert(shipment))

    async def _insert(self, shipment: Shipment) -> Shipment:
        async with self._session_factory() as session:
            session.add(shipment)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info(f"Live shipment already exists for order {shipment.order_id}")
                raise ShipmentExistsError(shipment.order_id) from e
        return shipment

    async def save(self, shipment: Shipment) -> Shipment:
        return await asyncio.shield(self._save(shipment))

    async def _save(self, shipment: Shipment) -> Shipment:
        shipment.updated_at = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            merged = await session.merge(shipment)
            await session.commit()
        return merged

    async def delete(self, shipment_id: str) -> None:
        await asyncio.shield(self._delete(shipment_id))

    async def _delete(self, shipment_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(Shipment).where(Shipment.id == shipment_id))
            await session.commit()

    # ==================== Tracking ====================

    async def add_tracking_updates(self, shipment_id: str, updates: Iterable[TrackingUpdate]) -> int:
        rows = [tracking_row(shipment_id, u) for u in updates]
        if not rows:
            return 0
        return await asyncio.shield(self._insert_tracking(rows))

    async def _insert_tracking(self, rows: List[dict]) -> int:
        stmt = (
            pg_insert(ShipmentTrackingUpdate)
            .values(rows)
            .on_conflict_do_nothing(constraint="uq_tracking_update_event")
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def list_tracking_updates(self, shipment_id: str) -> List[ShipmentTrackingUpdate]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ShipmentTrackingUpdate)
                .where(ShipmentTrackingUpdate.shipment_id == shipment_id)
                .order_by(ShipmentTrackingUpdate.carrier_timestamp, ShipmentTrackingUpdate.id)
            )
            return list(result.scalars().all())

    # ==================== Webhooks ====================

    async def record_webhook(self, envelope: WebhookEnvelope, signature_valid: bool) -> Tuple[ShippingWebhookLog, bool]:
        return await asyncio.shield(self._record_webhook(envelope, signature_valid))

    async def _record_webhook(self, envelope: WebhookEnvelope, signature_valid: bool) -> Tuple[ShippingWebhookLog, bool]:
        async with self._session_factory() as session:
            existing = await session.get(ShippingWebhookLog, _webhook_key(envelope), with_for_update=True)
            if existing is None:
                log = ShippingWebhookLog(**webhook_row(envelope, signature_valid))
                session.add(log)
                try:
                    await session.commit()
                    return log, True
                except IntegrityError:
                    # Concurrent delivery inserted it first
                    await session.rollback()
                    existing = await session.get(ShippingWebhookLog, _webhook_key(envelope), with_for_update=True)
                    if existing is None:
                        raise

            if not existing.processed:
                existing.retry_count = (existing.retry_count or 0) + 1
            await session.commit()
            return existing, False

    async def mark_webhook(self, carrier: str, webhook_id: str, processed: bool, error: Optional[str] = None) -> None:
        await asyncio.shield(self._mark_webhook(carrier, webhook_id, processed, error))

    async def _mark_webhook(self, carrier: str, webhook_id: str, processed: bool, error: Optional[str]) -> None:
        values = {"processed": processed, "error": error}
        if processed:
            values["processed_at"] = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            await session.execute(
                update(ShippingWebhookLog)
                .where(ShippingWebhookLog.carrier == carrier, ShippingWebhookLog.id == webhook_id)
                .values(**values)
            )
            await session.commit()
