"""Commerce-system collaborator used by the membership cache and verification.

``CommerceClient`` is the contract the core depends on. ``SquareCommerceClient``
implements it over a Square-style REST API with ``httpx.AsyncClient`` and turns
HTTP failures into the typed errors of :mod:`checkin_errors`.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import httpx
from loguru import logger

from checkin_config import CheckinSettings
from checkin_errors import (
    CommerceError,
    CommerceNetworkError,
    NotFound,
    PermissionDenied,
    RateLimited,
)


@dataclass
class CustomerRecord:
    id: str
    given_name: str = ""
    family_name: str = ""
    email: str = ""
    phone: str = ""
    reference_id: str = ""
    segment_ids: list[str] = field(default_factory=list)
    address_line1: str = ""
    locality: str = ""
    postal_code: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CustomerRecord":
        address = payload.get("address") or {}
        return cls(
            id=str(payload.get("id") or ""),
            given_name=payload.get("given_name") or "",
            family_name=payload.get("family_name") or "",
            email=payload.get("email_address") or payload.get("email") or "",
            phone=payload.get("phone_number") or payload.get("phone") or "",
            reference_id=payload.get("reference_id") or "",
            segment_ids=[str(s) for s in payload.get("segment_ids") or []],
            address_line1=address.get("address_line_1") or "",
            locality=address.get("locality") or "",
            postal_code=address.get("postal_code") or "",
        )


@dataclass
class OrderVerification:
    valid: bool
    order: dict | None = None
    reason: str | None = None


@dataclass
class ExternalSegment:
    id: str
    name: str


class CommerceClient(Protocol):
    async def get_customer(self, customer_id: str) -> CustomerRecord: ...

    async def search_customers_by_segment(self, segment_id: str) -> list[str]: ...

    async def get_order(self, order_id: str) -> dict: ...

    async def verify_checkin_order(
        self, order_id: str, required_item_id: str, required_variant_id: str | None
    ) -> OrderVerification: ...

    async def list_segments(self) -> list[ExternalSegment]: ...


def order_contains_item(order: Mapping[str, Any], item_id: str, variant_id: str | None) -> bool:
    """True when a line item references the configured item and variant.

    Square line items carry the variation id in ``catalog_object_id``, so with a
    variant configured that field alone identifies the purchase. Lines that
    split the two ids (``catalog_object_id`` for the item and
    ``catalog_object_variant_id`` for the variant) must match both.
    """
    for line in order.get("line_items") or []:
        object_id = line.get("catalog_object_id")
        if variant_id:
            if line.get("catalog_object_variant_id"):
                if object_id == item_id and line.get("catalog_object_variant_id") == variant_id:
                    return True
            elif object_id == variant_id:
                return True
        elif object_id == item_id or line.get("catalog_item_id") == item_id:
            return True
    return False


def check_order_for_item(order: dict, item_id: str, variant_id: str | None) -> OrderVerification:
    if not order.get("line_items"):
        return OrderVerification(valid=False, order=order, reason="Order has no line items")
    if order_contains_item(order, item_id, variant_id):
        return OrderVerification(valid=True, order=order)
    return OrderVerification(
        valid=False,
        order=order,
        reason="Order does not contain required check-in item",
    )


def _error_detail(response: httpx.Response, fallback: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return fallback
    errors = data.get("errors") if isinstance(data, dict) else None
    if errors and isinstance(errors, list):
        return errors[0].get("detail") or errors[0].get("code") or fallback
    return fallback


def raise_for_commerce_status(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    detail = _error_detail(response, f"{what} failed with status {status}")
    if status == 404:
        raise NotFound(f"{what} not found: {detail}", status=status)
    if status == 429:
        raise RateLimited(detail, status=status)
    if status in (401, 403):
        raise PermissionDenied(detail, status=status)
    raise CommerceError(detail, status=status)


class SquareCommerceClient:
    """Square REST implementation of :class:`CommerceClient`."""

    page_size = 100

    def __init__(self, settings: CheckinSettings, http_client: httpx.AsyncClient | None = None):
        self.base_url = settings.square_api_url.rstrip("/")
        self.headers = {
            "Square-Version": settings.square_api_version,
            "Authorization": f"Bearer {settings.square_access_token or ''}",
            "Content-Type": "application/json",
        }
        self.timeout = settings.commerce_timeout_seconds
        self._client = http_client

    async def _request(self, method: str, path: str, what: str, json: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        owns_client = self._client is None
        try:
            response = await client.request(method, url, headers=self.headers, json=json)
        except httpx.TransportError as exc:
            logger.warning("Commerce request failed", url=url, error=str(exc))
            raise CommerceNetworkError(f"Network error calling commerce API: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()
        raise_for_commerce_status(response, what)
        return response.json()

    async def get_customer(self, customer_id: str) -> CustomerRecord:
        data = await self._request("GET", f"/customers/{customer_id}", "Customer")
        customer = data.get("customer")
        if not customer:
            raise NotFound(f"Customer not found: {customer_id}")
        return CustomerRecord.from_payload(customer)

    async def search_customers_by_segment(self, segment_id: str) -> list[str]:
        customer_ids: list[str] = []
        cursor = None
        while True:
            body: dict[str, Any] = {
                "query": {"filter": {"segment_ids": {"any": [segment_id]}}},
                "limit": self.page_size,
            }
            if cursor:
                body["cursor"] = cursor
            data = await self._request("POST", "/customers/search", "Customer search", json=body)
            for customer in data.get("customers") or []:
                if customer.get("id"):
                    customer_ids.append(customer["id"])
            cursor = data.get("cursor")
            if not cursor:
                break
        logger.debug("Enumerated segment members", segment_id=segment_id, count=len(customer_ids))
        return customer_ids

    async def get_order(self, order_id: str) -> dict:
        data = await self._request("GET", f"/orders/{order_id}", "Order")
        order = data.get("order")
        if not order:
            raise NotFound(f"Order not found: {order_id}")
        return order

    async def verify_checkin_order(
        self, order_id: str, required_item_id: str, required_variant_id: str | None
    ) -> OrderVerification:
        try:
            order = await self.get_order(order_id)
        except NotFound:
            return OrderVerification(valid=False, reason="Order not found")
        return check_order_for_item(order, required_item_id, required_variant_id)

    async def list_segments(self) -> list[ExternalSegment]:
        segments: list[ExternalSegment] = []
        cursor = None
        while True:
            path = "/customers/segments" + (f"?cursor={cursor}" if cursor else "")
            data = await self._request("GET", path, "Segment listing")
            for seg in data.get("segments") or []:
                segments.append(ExternalSegment(id=seg.get("id", ""), name=seg.get("name", "")))
            cursor = data.get("cursor")
            if not cursor:
                break
        return segments

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
