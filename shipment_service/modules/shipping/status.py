"""
Canonical shipment status machine.

Normalization (carrier string -> canonical status) is total and fails open to
PENDING. Transition decisions are made here and applied by the orchestrator.
"""
import enum
import logging
from typing import Dict, Optional

from shipment_service.models.shipment import ShipmentStatus

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.FAILED,
    ShipmentStatus.RETURNED,
    ShipmentStatus.CANCELLED,
})

# Only reachable from these
CANCELLABLE_STATUSES = frozenset({ShipmentStatus.PENDING, ShipmentStatus.PACKED})

# Forward order of the non-terminal statuses
_PROGRESS = {
    ShipmentStatus.PENDING: 0,
    ShipmentStatus.PACKED: 1,
    ShipmentStatus.IN_TRANSIT: 2,
}

# Order status requested from the order service when a shipment lands here
ORDER_STATUS_ON_TRANSITION = {
    ShipmentStatus.DELIVERED: "delivered",
    ShipmentStatus.RETURNED: "returned",
    ShipmentStatus.CANCELLED: "cancelled",
}


class TransitionOutcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"  # same status
    REJECTED = "rejected"  # would leave a terminal status or move backwards


def is_terminal(status) -> bool:
    return ShipmentStatus(status) in TERMINAL_STATUSES


def decide_transition(current, new) -> TransitionOutcome:
    """
    Decide whether `current -> new` may be applied to a record.

    - Terminal statuses never change (cancelled -> cancelled is a no-op).
    - Cancelled is only reachable from pending/packed.
    - Any other terminal status is always accepted from a non-terminal one.
    - Between non-terminal statuses, only forward moves are accepted.
    """
    current = ShipmentStatus(current)
    new = ShipmentStatus(new)

    if current == new:
        return TransitionOutcome.NOOP
    if current in TERMINAL_STATUSES:
        return TransitionOutcome.REJECTED
    if new == ShipmentStatus.CANCELLED:
        return TransitionOutcome.APPLIED if current in CANCELLABLE_STATUSES else TransitionOutcome.REJECTED
    if new in TERMINAL_STATUSES:
        return TransitionOutcome.APPLIED
    if _PROGRESS[new] > _PROGRESS[current]:
        return TransitionOutcome.APPLIED
    return TransitionOutcome.REJECTED


def normalize_status(
    raw_status: Optional[str],
    status_map: Dict[str, ShipmentStatus],
    carrier: str = "carrier",
) -> ShipmentStatus:
    """
    Map a carrier status string to a canonical status.

    Exact key match after folding case, spaces and dashes, else PENDING.
    Never raises; CANCELLED is never produced (carriers report their own
    cancellations as FAILED in their maps).
    """
    if raw_status is None:
        return ShipmentStatus.PENDING

    key = str(raw_status).upper().strip().replace(" ", "_").replace("-", "_")
    if not key:
        return ShipmentStatus.PENDING

    if key in status_map:
        return _reportable(status_map[key])

    logger.warning(f"Unknown {carrier} status: {raw_status}")
    return ShipmentStatus.PENDING


def _reportable(status: ShipmentStatus) -> ShipmentStatus:
    if status == ShipmentStatus.CANCELLED:
        return ShipmentStatus.FAILED
    return status
