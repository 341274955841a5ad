"""
Shipment Service Exception Hierarchy

Structured exception classes for shipment orchestration. All exceptions include
code, message, and details for audit trail and debugging.

The taxonomy is closed: every error carries an ErrorKind so callers (and the
HTTP layer) branch on `error.kind` instead of isinstance chains.

Exception Hierarchy:
    ShipmentServiceError
    ├── ShippingValidationError        (validation)
    ├── OrderNotFoundError             (not_found)
    ├── ShipmentNotFoundError          (not_found)
    ├── ShipmentExistsError            (conflict)
    ├── UnsupportedRegionError         (unsupported_region)
    ├── InvalidWebhookSignatureError   (signature)
    ├── ShippingProviderError          (provider)
    ├── OrderServiceError              (provider)
    └── ShippingTimeoutError           (timeout)
"""
import enum
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNSUPPORTED_REGION = "unsupported_region"
    SIGNATURE = "signature"
    PROVIDER = "provider"
    TIMEOUT = "timeout"


class ShipmentServiceError(Exception):
    """
    Base exception for all shipment service errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    kind: ErrorKind = ErrorKind.PROVIDER
    http_status: int = 500
    default_code: str = "SHIPMENT_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# CLIENT ERRORS
# =============================================================================

class ShippingValidationError(ShipmentServiceError):
    """Request failed shape/invariant validation. Never retried."""
    kind = ErrorKind.VALIDATION
    http_status = 400
    default_code = "SHIPPING_VALIDATION_FAILED"
    default_severity = "P3"

    def __init__(self, field: str, message: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"field": field})
        self.field = field
        super().__init__(message, details=details, **kwargs)


class OrderNotFoundError(ShipmentServiceError):
    kind = ErrorKind.NOT_FOUND
    http_status = 404
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, order_id: str, **kwargs):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found", details={"order_id": order_id}, **kwargs)


class ShipmentNotFoundError(ShipmentServiceError):
    kind = ErrorKind.NOT_FOUND
    http_status = 404
    default_code = "SHIPMENT_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, ref: str, **kwargs):
        self.ref = ref
        super().__init__(f"Shipment {ref} not found", details={"ref": ref}, **kwargs)


class ShipmentExistsError(ShipmentServiceError):
    """A live (non-cancelled) shipment already exists for the order."""
    kind = ErrorKind.CONFLICT
    http_status = 409
    default_code = "SHIPMENT_EXISTS"
    default_severity = "P3"

    def __init__(self, order_id: str, existing_shipment_id: Optional[str] = None, **kwargs):
        self.order_id = order_id
        self.existing_shipment_id = existing_shipment_id
        super().__init__(
            f"Order {order_id} already has an active shipment",
            details={"order_id": order_id, "existing_shipment_id": existing_shipment_id},
            **kwargs,
        )


# =============================================================================
# CONFIGURATION / SECURITY ERRORS
# =============================================================================

class UnsupportedRegionError(ShipmentServiceError):
    """No adapter onboarded for the (region, mode) pair."""
    kind = ErrorKind.UNSUPPORTED_REGION
    http_status = 422
    default_code = "UNSUPPORTED_REGION"
    default_severity = "P2"

    def __init__(self, region: str, mode: Optional[str] = None, message: Optional[str] = None, **kwargs):
        self.region = region
        self.mode = mode
        super().__init__(
            message or f"No shipping carrier configured for region {region} ({mode or 'any'} mode)",
            details={"region": region, "mode": mode},
            **kwargs,
        )


class InvalidWebhookSignatureError(ShipmentServiceError):
    kind = ErrorKind.SIGNATURE
    http_status = 401
    default_code = "INVALID_WEBHOOK_SIGNATURE"
    default_severity = "P1"

    def __init__(self, carrier: str, webhook_id: Optional[str] = None, **kwargs):
        self.carrier = carrier
        self.webhook_id = webhook_id
        super().__init__(
            f"Invalid webhook signature from {carrier}",
            details={"carrier": carrier, "webhook_id": webhook_id},
            **kwargs,
        )


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class ShippingProviderError(ShipmentServiceError):
    """Carrier rejected the call or returned something we cannot parse."""
    kind = ErrorKind.PROVIDER
    http_status = 502
    default_code = "SHIPPING_PROVIDER_ERROR"
    default_severity = "P1"

    def __init__(
        self,
        carrier: str,
        message: str,
        raw_body: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        self.carrier = carrier
        self.raw_body = raw_body
        self.status_code = status_code
        details = kwargs.pop("details", {})
        details.update({"carrier": carrier, "status_code": status_code})
        super().__init__(message, details=details, **kwargs)


class ShippingTimeoutError(ShipmentServiceError):
    """Carrier did not answer within the configured timeout."""
    kind = ErrorKind.TIMEOUT
    http_status = 504
    default_code = "SHIPPING_TIMEOUT"
    default_severity = "P1"

    def __init__(self, carrier: str, timeout_ms: int, **kwargs):
        self.carrier = carrier
        self.timeout_ms = timeout_ms
        super().__init__(
            f"{carrier} did not respond within {timeout_ms}ms",
            details={"carrier": carrier, "timeout_ms": timeout_ms},
            **kwargs,
        )


class OrderServiceError(ShipmentServiceError):
    """The external order service failed or answered with something unusable."""
    kind = ErrorKind.PROVIDER
    http_status = 502
    default_code = "ORDER_SERVICE_ERROR"
    default_severity = "P1"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        details = kwargs.pop("details", {})
        details.update({"status_code": status_code})
        super().__init__(message, details=details, **kwargs)


# kind -> log level used when the error is reported
LOG_LEVELS = {
    ErrorKind.VALIDATION: logging.INFO,
    ErrorKind.NOT_FOUND: logging.INFO,
    ErrorKind.CONFLICT: logging.INFO,
    ErrorKind.UNSUPPORTED_REGION: logging.WARNING,
    ErrorKind.SIGNATURE: logging.WARNING,
    ErrorKind.PROVIDER: logging.ERROR,
    ErrorKind.TIMEOUT: logging.ERROR,
}


def log_level_for(error: ShipmentServiceError) -> int:
    return LOG_LEVELS.get(error.kind, logging.ERROR)
