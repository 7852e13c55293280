import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from bulk_refresh import BulkRefreshEngine, RefreshProgress  # noqa: E402
from checkin_config import CheckinSettings  # noqa: E402
from checkin_db import CheckinDatabase  # noqa: E402
from checkin_errors import CommerceError  # noqa: E402
from checkin_log import CheckinLog  # noqa: E402
from checkin_verification import CheckinVerification  # noqa: E402
from commerce_client import CustomerRecord, ExternalSegment  # noqa: E402
from demo_commerce import DemoCommerceClient  # noqa: E402
from membership_cache import MembershipCache  # noqa: E402
from offline_queue import OfflineQueue  # noqa: E402
from segment_registry import SegmentRegistry  # noqa: E402


CHECKIN_ITEM = "CHECKIN_ITEM"
CHECKIN_VARIANT = "CHECKIN_VARIANT"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FlakyCommerce(DemoCommerceClient):
    """Demo client whose customer lookups can be scripted to fail."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scripted_failures: dict[str, list[Exception]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.offline = False

    async def get_customer(self, customer_id: str) -> CustomerRecord:
        if self.offline:
            self.calls.append(("get_customer", customer_id))
            raise CommerceError("network unreachable")
        if customer_id in self.always_fail:
            self.calls.append(("get_customer", customer_id))
            raise self.always_fail[customer_id]
        queued = self.scripted_failures.get(customer_id)
        if queued:
            self.calls.append(("get_customer", customer_id))
            raise queued.pop(0)
        return await super().get_customer(customer_id)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return CheckinSettings(
        db_path=str(tmp_path / "checkin.sqlite3"),
        checkin_catalog_item_id=CHECKIN_ITEM,
        checkin_variant_id=CHECKIN_VARIANT,
        cache_ttl_hours=24,
        refresh_age_hours=72,
        bulk_concurrency=2,
        bulk_rate_limit_ms=500,
        bulk_request_delay_ms=50,
        retry_max_attempts=3,
        retry_base_delay_ms=100,
        queue_max_sync_attempts=3,
        admin_pin="2468",
        session_secret="test-secret",
        log_level="WARNING",
    )


@pytest.fixture
def db(settings):
    database = CheckinDatabase(settings)
    database.init_db()
    return database


@pytest.fixture
def commerce():
    return FlakyCommerce(
        customers=[
            CustomerRecord(
                id="MEMBER_1", given_name="Maya", family_name="Reyes", email="maya@example.com",
                phone="+15035550111", reference_id="LOT-17", segment_ids=["SEG_A", "SEG_UNRELATED"],
                address_line1="12 Cedar St", locality="Portland", postal_code="97201",
            ),
            CustomerRecord(
                id="MEMBER_2", given_name="Theo", family_name="Nakamura", email="theo@example.com",
                phone="+15035550122", reference_id="LOT-22", segment_ids=["SEG_A", "SEG_B"],
            ),
            CustomerRecord(
                id="GUEST_1", given_name="Iris", family_name="Okafor", email="iris@example.com",
                phone="+15035550133", segment_ids=["SEG_UNRELATED"],
            ),
        ],
        orders=[
            {"id": "ORDER_X", "customer_id": "MEMBER_1",
             "line_items": [{"catalog_object_id": CHECKIN_VARIANT}]},
            {"id": "ORDER_WRONG", "customer_id": "MEMBER_1",
             "line_items": [{"catalog_object_id": "OTHER_VARIANT"}]},
            {"id": "ORDER_ANON", "line_items": [{"catalog_object_id": CHECKIN_VARIANT}]},
            {"id": "ORDER_GUEST", "customer_id": "GUEST_1",
             "line_items": [{"catalog_object_id": CHECKIN_VARIANT}]},
        ],
        segments=[
            ExternalSegment(id="SEG_A", name="Annual"),
            ExternalSegment(id="SEG_B", name="Summer"),
            ExternalSegment(id="SEG_UNRELATED", name="Newsletter"),
        ],
    )


@pytest.fixture
def segments(db):
    registry = SegmentRegistry(db)
    registry.add_segment("SEG_A", "Annual Members", 1)
    return registry


@pytest.fixture
def cache(db, commerce, segments, settings, clock):
    return MembershipCache(db, commerce, segments, settings, clock=clock)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def progress():
    return RefreshProgress()


@pytest.fixture
def engine(cache, commerce, segments, settings, progress, sleeper):
    return BulkRefreshEngine(cache, commerce, segments, settings, progress, sleep=sleeper)


@pytest.fixture
def queue(db, settings, clock):
    return OfflineQueue(db, settings, clock=clock)


@pytest.fixture
def checkin_log(db, clock):
    return CheckinLog(db, clock=clock)


@pytest.fixture
def verification(commerce, cache, settings, checkin_log):
    return CheckinVerification(commerce, cache, settings, checkin_log=checkin_log)
