"""
Shipment, tracking update and webhook log models

One live (non-cancelled) shipment per order, an append-only tracking history,
and an audit row for every inbound carrier webhook.
"""
import enum
import secrets
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date,
    Float, Text, JSON, ForeignKey, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship

from shipment_service.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """Canonical, carrier-agnostic shipment status"""
    PENDING = "pending"  # Accepted, carrier has not picked up
    PACKED = "packed"  # Ready to ship / manifested
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"  # Carrier gave up (lost, damaged, carrier-side cancel)
    RETURNED = "returned"  # RTO
    CANCELLED = "cancelled"  # Cancelled by us; never reported by carriers


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_shipment_id() -> str:
    return f"shp_{secrets.token_hex(12)}"


class Shipment(Base):
    """
    Tracks a shipment from carrier acceptance through delivery.

    carrier_metadata is an opaque bag (carrier order id, courier name, raw
    status) kept verbatim for support; business logic only reads the
    canonical columns.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_order_id", "order_id"),
        Index("ix_shipments_tracking_number", "tracking_number"),
        Index("ix_shipments_carrier_shipment_id", "carrier", "carrier_shipment_id"),
        Index("ix_shipments_status", "status"),
        # At most one live shipment per order, across processes
        Index(
            "uq_shipments_live_order",
            "order_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
        ),
    )

    id = Column(String(32), primary_key=True, default=generate_shipment_id)
    order_id = Column(String(64), nullable=False)

    # Routing
    carrier = Column(String(50), nullable=False)
    region = Column(String(8), nullable=False)
    method = Column(String(20), nullable=False, default="standard")
    destination_country = Column(String(2), nullable=False)

    # Carrier references
    carrier_shipment_id = Column(String(100), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_number_is_placeholder = Column(Boolean, nullable=False, default=False)
    tracking_url = Column(String(500), nullable=True)
    label_url = Column(String(500), nullable=True)

    # State
    status = Column(String(20), nullable=False, default=ShipmentStatus.PENDING.value)
    cost = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    estimated_delivery = Column(Date, nullable=True)

    carrier_metadata = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    tracking_updates = relationship(
        "ShipmentTrackingUpdate",
        back_populates="shipment",
        order_by="ShipmentTrackingUpdate.carrier_timestamp",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ShipmentStatus.DELIVERED.value,
            ShipmentStatus.FAILED.value,
            ShipmentStatus.RETURNED.value,
            ShipmentStatus.CANCELLED.value,
        )

    @property
    def has_carrier_reference(self) -> bool:
        return bool(self.carrier_shipment_id)

    def __repr__(self):
        return f"<Shipment(id={self.id}, order={self.order_id}, carrier={self.carrier}, status={self.status})>"


class ShipmentTrackingUpdate(Base):
    """
    Append-only tracking history.

    Ordered by carrier timestamp, not arrival order. Re-polled histories hit
    the unique constraint and are skipped.
    """
    __tablename__ = "shipment_tracking_updates"
    __table_args__ = (
        UniqueConstraint(
            "shipment_id", "carrier_timestamp", "status", "description",
            name="uq_tracking_update_event",
        ),
        Index("ix_tracking_updates_shipment_ts", "shipment_id", "carrier_timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shipment_id = Column(String(32), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    tracking_number = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False)
    location = Column(String(255), nullable=True)
    description = Column(Text, nullable=False, default="")
    carrier_timestamp = Column(DateTime(timezone=True), nullable=False)
    carrier_metadata = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime(timezone=True), default=_utcnow)

    shipment = relationship("Shipment", back_populates="tracking_updates")

    def __repr__(self):
        return f"<ShipmentTrackingUpdate(shipment={self.shipment_id}, status={self.status}, at={self.carrier_timestamp})>"


class ShippingWebhookLog(Base):
    """
    Inbound carrier webhook, persisted for audit whether or not it was processed.

    Keyed by (carrier, id): carriers assign ids independently.
    """
    __tablename__ = "shipping_webhooks"
    __table_args__ = (
        Index("ix_shipping_webhooks_processed", "processed"),
    )

    carrier = Column(String(50), primary_key=True)
    id = Column(String(128), primary_key=True)
    event = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)
    raw_body = Column(Text, nullable=True)
    signature = Column(String(255), nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    received_at = Column(DateTime(timezone=True), default=_utcnow)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ShippingWebhookLog(id={self.id}, carrier={self.carrier}, processed={self.processed})>"
