"""
Base Carrier Interface

- All carriers implement this interface; callers never depend on a concrete carrier
- Shared plumbing lives here:
  - Lazy httpx client with the per-carrier timeout
  - Token cache guarded by a per-adapter lock, one re-auth retry on 401
  - Failure classification (timeout vs provider error)
  - HMAC-SHA256 webhook verification
- Each carrier provides its own:
  - Request/response translation
  - Status mapping
  - Webhook payload parsing
"""
import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

import httpx

from shipment_service.core.exceptions import ShippingProviderError, ShippingTimeoutError
from shipment_service.models.shipment import ShipmentStatus
from shipment_service.modules.shipping.regions import RegionConfig
from shipment_service.modules.shipping.status import normalize_status
from shipment_service.schemas.shipping import RateQuoteRequest, ShippingRequest

logger = logging.getLogger(__name__)


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class CarrierShipmentResult:
    """Carrier's view of a shipment, already normalized."""
    carrier_shipment_id: str
    tracking_number: str
    status: ShipmentStatus
    tracking_number_is_placeholder: bool = False
    cost: Optional[float] = None
    currency: Optional[str] = None
    estimated_delivery: Optional[date] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    raw_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingUpdate:
    """Single tracking event."""
    tracking_number: str
    status: ShipmentStatus
    timestamp: datetime
    description: str = ""
    location: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Rate:
    """Shipping rate quote."""
    carrier: str
    method: str
    cost: float
    currency: str
    estimated_days: int
    description: str
    is_available: bool = True


@dataclass
class WebhookEnvelope:
    """
    Normalized inbound webhook.

    Built even for payloads that cannot be parsed (event="malformed",
    error set) so the audit row is always written.
    """
    id: str
    carrier: str
    event: str
    raw_body: str
    payload: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed: bool = False
    retry_count: int = 0
    carrier_shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    status: Optional[ShipmentStatus] = None
    update: Optional[TrackingUpdate] = None
    error: Optional[str] = None

    @property
    def is_malformed(self) -> bool:
        return self.payload is None


@dataclass
class TokenCache:
    """Bearer token with its expiry."""
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_valid(self, margin_seconds: int = 60) -> bool:
        if not self.token:
            return False
        if self.expires_at is None:
            return True
        return datetime.now(timezone.utc) + timedelta(seconds=margin_seconds) < self.expires_at


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort parse of carrier timestamps; naive values are taken as UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            for fmt in ("%Y-%m-%d %H:%M:%S", "%d-%m-%Y %H:%M:%S", "%d %b %Y %H:%M"):
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all shipping carriers.

    One instance per (region, mode), reused across calls. The only state
    kept between calls is the cached auth token.
    """

    # Carriers that authenticate with a short-lived token set this
    requires_token: bool = False

    # Header carrying the webhook signature
    signature_header: str = "X-Signature"

    # Carrier status string -> canonical status
    status_map: Dict[str, ShipmentStatus] = {}

    def __init__(self, config: RegionConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize carrier with its region configuration.

        Args:
            config: Region config with credentials, base URL and timeout
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token = TokenCache()
        self._token_lock = asyncio.Lock()

    @property
    @abstractmethod
    def carrier_code(self) -> str:
        """Return the carrier code."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return human-readable carrier name."""
        pass

    @property
    def region(self) -> str:
        return self.config.region

    @property
    def mode(self) -> str:
        return self.config.mode

    @property
    def timeout_ms(self) -> int:
        return self.config.timeout_ms

    # =========================================================================
    # Operations
    # =========================================================================

    @abstractmethod
    async def create_shipment(self, request: ShippingRequest) -> CarrierShipmentResult:
        """
        Submit a new shipment.

        Never returns an empty tracking number; a placeholder derived from
        the carrier's order id is flagged with tracking_number_is_placeholder.
        """
        pass

    @abstractmethod
    async def get_shipment_status(self, carrier_shipment_id: str) -> CarrierShipmentResult:
        pass

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> List[TrackingUpdate]:
        """Full event history; empty when the carrier has none yet."""
        pass

    @abstractmethod
    async def cancel_shipment(self, carrier_shipment_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a shipment.

        Returns:
            True if the carrier confirmed, False only if it explicitly
            declined without an error. Rejections raise ShippingProviderError.
        """
        pass

    @abstractmethod
    async def get_shipping_rates(self, request: RateQuoteRequest) -> List[Rate]:
        """Quote rates for a possibly incomplete request, filling carrier defaults."""
        pass

    def get_tracking_url(self, tracking_number: str) -> Optional[str]:
        return None

    def map_status(self, carrier_status: Optional[str]) -> ShipmentStatus:
        """Map carrier status string to canonical ShipmentStatus."""
        return normalize_status(carrier_status, self.status_map, self.carrier_code)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def validate_webhook(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Constant-time HMAC check over the exact raw body. Never raises."""
        secret = self.config.credentials.webhook_secret
        if not secret:
            logger.warning(f"{self.carrier_code} webhook secret not configured for {self.region}/{self.mode}")
            return False
        if not signature:
            return False

        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[7:]

        expected = compute_signature(secret, raw_body)
        return hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8"))

    def process_webhook(self, raw_body: bytes, signature: Optional[str] = None) -> WebhookEnvelope:
        """
        Normalize a webhook body into an envelope. Never raises.
        """
        text = raw_body.decode("utf-8", errors="replace")
        envelope = WebhookEnvelope(
            id=self._fallback_webhook_id(raw_body),
            carrier=self.carrier_code,
            event="malformed",
            raw_body=text,
            signature=signature,
        )

        try:
            payload = json.loads(text)
        except ValueError as e:
            envelope.error = f"Invalid JSON: {e}"
            logger.warning(f"Malformed {self.carrier_code} webhook {envelope.id}: {e}")
            return envelope

        if not isinstance(payload, dict):
            envelope.error = "Webhook payload is not a JSON object"
            return envelope

        envelope.payload = payload
        envelope.event = "shipment.updated"
        try:
            self._parse_webhook(payload, envelope)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            envelope.error = f"Unparseable payload: {e}"
            logger.warning(f"Could not parse {self.carrier_code} webhook {envelope.id}: {e}")
        return envelope

    @abstractmethod
    def _parse_webhook(self, payload: Dict[str, Any], envelope: WebhookEnvelope) -> None:
        """Fill id/event/references/status/update on the envelope from the payload."""
        pass

    def _fallback_webhook_id(self, raw_body: bytes) -> str:
        """Deterministic id for carriers that do not send one."""
        return f"{self.carrier_code}_{hashlib.sha256(raw_body).hexdigest()[:32]}"

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            kwargs = {
                "base_url": self.config.base_url,
                "timeout": httpx.Timeout(self.timeout_ms / 1000),
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _authenticate(self) -> TokenCache:
        """Obtain a fresh token. Only called for carriers with requires_token."""
        raise NotImplementedError

    def _auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        return {}

    async def _ensure_token(self) -> Optional[str]:
        """Return a valid token, authenticating at most once across concurrent callers."""
        if not self.requires_token:
            return None
        if self._token.is_valid():
            return self._token.token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token.is_valid():
                return self._token.token
            logger.info(f"Authenticating with {self.carrier_name} ({self.region}/{self.mode})")
            self._token = await self._authenticate()
            return self._token.token

    async def _invalidate_token(self, stale_token: Optional[str]) -> None:
        async with self._token_lock:
            if self._token.token == stale_token:
                self._token = TokenCache()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        """
        Make a request to the carrier API.

        Raises:
            ShippingTimeoutError: connect/read timeout
            ShippingProviderError: transport failure, HTTP >= 400, non-JSON body
        """
        client = await self._get_client()
        reauthenticated = False

        while True:
            headers = {"Accept": "application/json"}
            token = None
            if authenticated:
                token = await self._ensure_token()
                headers.update(self._auth_headers(token))

            try:
                response = await client.request(method, path, json=json_body, params=params, headers=headers)
            except httpx.TimeoutException as e:
                logger.error(f"{self.carrier_code} {method} {path} timed out after {self.timeout_ms}ms")
                raise ShippingTimeoutError(self.carrier_code, self.timeout_ms) from e
            except httpx.RequestError as e:
                logger.error(f"{self.carrier_code} {method} {path} request failed: {e}")
                raise ShippingProviderError(self.carrier_code, f"Connection error: {e}") from e

            if (
                response.status_code == 401
                and authenticated
                and self.requires_token
                and not reauthenticated
            ):
                logger.info(f"{self.carrier_code} rejected token, re-authenticating once")
                await self._invalidate_token(token)
                reauthenticated = True
                continue

            return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> Any:
        raw = response.text
        if response.status_code >= 400:
            message = self._error_message(raw) or f"HTTP {response.status_code}"
            logger.error(f"{self.carrier_code} API error {response.status_code}: {message}")
            raise ShippingProviderError(
                self.carrier_code,
                message,
                raw_body=raw,
                status_code=response.status_code,
            )
        if not raw.strip():
            return {}
        try:
            return response.json()
        except ValueError:
            raise ShippingProviderError(
                self.carrier_code,
                "Malformed response from carrier",
                raw_body=raw,
                status_code=response.status_code,
            )

    @contextmanager
    def _translating(self, data: Any):
        """
        Guard the mapping of a parsed carrier response onto our types.

        A field of the wrong shape (non-numeric rate, non-object event)
        surfaces as ShippingProviderError carrying the response body.
        """
        try:
            yield
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Unexpected {self.carrier_code} response: {e}")
            raise ShippingProviderError(
                self.carrier_code,
                f"Unexpected response from carrier: {e}",
                raw_body=json.dumps(data, default=str),
            ) from e

    @staticmethod
    def _error_message(raw: str) -> Optional[str]:
        try:
            data = json.loads(raw)
        except ValueError:
            return raw[:200] if raw else None
        if isinstance(data, dict):
            for key in ("message", "error", "detail", "errors"):
                value = data.get(key)
                if value:
                    return value if isinstance(value, str) else json.dumps(value)[:200]
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(region={self.region}, mode={self.mode})>"
