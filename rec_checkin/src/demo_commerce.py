"""In-memory commerce backend for demo mode and local development."""

import asyncio
import copy

from checkin_errors import NotFound
from commerce_client import (
    CustomerRecord,
    ExternalSegment,
    OrderVerification,
    check_order_for_item,
)


DEMO_ITEM_ID = "DEMOCHECKINITEM"
DEMO_VARIANT_ID = "DEMOCHECKINVARIANT"


def _demo_seed() -> tuple[list[ExternalSegment], list[CustomerRecord], list[dict]]:
    segments = [
        ExternalSegment(id="gv2:DEMO_ANNUAL", name="Annual Members"),
        ExternalSegment(id="gv2:DEMO_SEASON", name="Season Pass"),
        ExternalSegment(id="gv2:DEMO_NEWSLETTER", name="Newsletter"),
    ]
    customers = [
        CustomerRecord(
            id="DEMO_CUST_0001", given_name="Ada", family_name="Lovelace",
            email="ada@example.com", phone="+15555550101", reference_id="101",
            segment_ids=["gv2:DEMO_ANNUAL"], address_line1="1 Pool Lane",
            locality="Springfield", postal_code="97477",
        ),
        CustomerRecord(
            id="DEMO_CUST_0002", given_name="Grace", family_name="Hopper",
            email="grace@example.com", phone="+15555550102", reference_id="102",
            segment_ids=["gv2:DEMO_SEASON", "gv2:DEMO_NEWSLETTER"],
        ),
        CustomerRecord(
            id="DEMO_CUST_0003", given_name="Alan", family_name="Turing",
            email="alan@example.com", phone="+15555550103", reference_id="103",
            segment_ids=["gv2:DEMO_NEWSLETTER"],
        ),
    ]
    orders = [
        {
            "id": "DEMOORDER0001",
            "customer_id": "DEMO_CUST_0001",
            "line_items": [{"catalog_object_id": DEMO_VARIANT_ID, "quantity": "1"}],
        },
        {
            "id": "DEMOORDER0002",
            "customer_id": "DEMO_CUST_0003",
            "line_items": [{"catalog_object_id": DEMO_VARIANT_ID, "quantity": "3"}],
        },
        {
            "id": "DEMOORDER0003",
            "line_items": [{"catalog_object_id": DEMO_VARIANT_ID, "quantity": "1"}],
        },
        {
            "id": "DEMOORDER0004",
            "customer_id": "DEMO_CUST_0002",
            "line_items": [{"catalog_object_id": "SNACKBARVARIANT", "quantity": "2"}],
        },
    ]
    return segments, customers, orders


class DemoCommerceClient:
    """Serves customers, orders and segments from memory.

    Passing no data seeds the demo roster. ``latency`` adds an artificial
    delay to every call so bulk refresh progress is observable in the UI.
    """

    def __init__(
        self,
        customers: list[CustomerRecord] | None = None,
        orders: list[dict] | None = None,
        segments: list[ExternalSegment] | None = None,
        latency: float = 0.0,
    ):
        if customers is None and orders is None and segments is None:
            segments, customers, orders = _demo_seed()
        self.customers = {c.id: c for c in customers or []}
        self.orders = {o["id"]: o for o in orders or []}
        self.segments = list(segments or [])
        self.latency = latency
        self.calls: list[tuple[str, str]] = []

    async def _tick(self, name: str, arg: str):
        self.calls.append((name, arg))
        if self.latency:
            await asyncio.sleep(self.latency)

    async def get_customer(self, customer_id: str) -> CustomerRecord:
        await self._tick("get_customer", customer_id)
        customer = self.customers.get(customer_id)
        if customer is None:
            raise NotFound(f"Customer not found: {customer_id}")
        return copy.deepcopy(customer)

    async def search_customers_by_segment(self, segment_id: str) -> list[str]:
        await self._tick("search_customers_by_segment", segment_id)
        return [cid for cid, c in self.customers.items() if segment_id in c.segment_ids]

    async def get_order(self, order_id: str) -> dict:
        await self._tick("get_order", order_id)
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        return copy.deepcopy(order)

    async def verify_checkin_order(
        self, order_id: str, required_item_id: str, required_variant_id: str | None
    ) -> OrderVerification:
        try:
            order = await self.get_order(order_id)
        except NotFound:
            return OrderVerification(valid=False, reason="Order not found")
        return check_order_for_item(order, required_item_id, required_variant_id)

    async def list_segments(self) -> list[ExternalSegment]:
        await self._tick("list_segments", "")
        return list(self.segments)

    def call_count(self, name: str, arg: str | None = None) -> int:
        return sum(1 for n, a in self.calls if n == name and (arg is None or a == arg))
