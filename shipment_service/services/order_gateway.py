"""
Order service gateway.

The shipment service does not own orders. It asks the order service whether
an order exists (and where it ships to) and tells it when an order's status
should change because of a shipment event.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from shipment_service.core.exceptions import OrderServiceError
from shipment_service.core.request_context import get_request_id

logger = logging.getLogger(__name__)

SHIPPED_ORDER_STATUSES = frozenset({"shipped", "delivered", "returned"})


@dataclass
class OrderSummary:
    """What the shipment service needs to know about an order."""
    order_id: str
    status: Optional[str] = None
    destination_country: Optional[str] = None
    shipped: bool = False


class OrderGateway(ABC):
    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[OrderSummary]:
        """Return the order, or None if it does not exist."""
        pass

    @abstractmethod
    async def update_order_status(
        self,
        order_id: str,
        status: str,
        shipment_id: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> None:
        pass

    async def close(self) -> None:
        pass


class HttpOrderGateway(OrderGateway):
    """
    Order service over HTTP.

    GET   {base}/orders/{id}         -> 200 order JSON | 404
    PATCH {base}/orders/{id}/status  -> 2xx
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            kwargs = {"base_url": self.base_url, "timeout": self.timeout_seconds, "headers": headers}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _headers(self) -> dict:
        request_id = get_request_id()
        return {"X-Request-ID": request_id} if request_id else {}

    async def get_order(self, order_id: str) -> Optional[OrderSummary]:
        client = await self._get_client()
        try:
            response = await client.get(f"/orders/{order_id}", headers=self._headers())
        except httpx.RequestError as e:
            raise OrderServiceError(f"Order lookup failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise OrderServiceError(
                f"Order lookup returned HTTP {response.status_code}", status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise OrderServiceError("Order lookup returned invalid JSON") from e

        order = data.get("data", data) if isinstance(data, dict) else {}
        address = order.get("shipping_address") or order.get("shippingAddress") or {}
        status = (order.get("status") or "").lower() or None

        return OrderSummary(
            order_id=str(order.get("id") or order_id),
            status=status,
            destination_country=(address.get("country") or "").upper() or None,
            shipped=bool(order.get("shipped")) or status in SHIPPED_ORDER_STATUSES,
        )

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        shipment_id: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> None:
        client = await self._get_client()
        body = {"status": status, "shipment_id": shipment_id, "tracking_number": tracking_number}
        try:
            response = await client.patch(f"/orders/{order_id}/status", json=body, headers=self._headers())
        except httpx.RequestError as e:
            raise OrderServiceError(f"Order status update failed: {e}") from e

        if response.status_code >= 400:
            raise OrderServiceError(
                f"Order status update returned HTTP {response.status_code}", status_code=response.status_code,
            )
        logger.info(f"Order {order_id} status -> {status}")
