"""Local mirror of membership verdicts derived from external segment membership.

Reads are served from ``membership_cache`` while an entry is younger than the
configured TTL. Stale or missing entries are refreshed from the commerce
system; when that fails a stale entry is still better than nothing and is
returned with ``from_cache=True``.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from checkin_config import CheckinSettings
from checkin_db import CheckinDatabase, parse_ts, to_iso, utcnow
from checkin_errors import InvalidInput, StorageError
from commerce_client import CommerceClient, CustomerRecord
from segment_registry import SegmentRegistry


SEARCH_TYPES = ("phone", "email", "lot", "name")
SEARCH_LIMIT = 50


@dataclass
class MembershipCacheEntry:
    customer_id: str
    has_membership: bool
    segment_ids: list[str] = field(default_factory=list)
    given_name: str = ""
    family_name: str = ""
    email: str = ""
    phone: str = ""
    reference_id: str = ""
    address_line1: str = ""
    locality: str = ""
    postal_code: str = ""
    last_verified_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "MembershipCacheEntry":
        try:
            segment_ids = json.loads(row.get("segment_ids") or "[]")
        except ValueError:
            segment_ids = []
        return cls(
            customer_id=row["customer_id"],
            has_membership=bool(row.get("has_membership")),
            segment_ids=list(segment_ids),
            given_name=row.get("given_name") or "",
            family_name=row.get("family_name") or "",
            email=row.get("email") or "",
            phone=row.get("phone") or "",
            reference_id=row.get("reference_id") or "",
            address_line1=row.get("address_line1") or "",
            locality=row.get("locality") or "",
            postal_code=row.get("postal_code") or "",
            last_verified_at=parse_ts(row.get("last_verified_at")),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_verified_at"] = to_iso(self.last_verified_at)
        return data


@dataclass
class MembershipStatus:
    has_membership: bool
    segment_ids: list[str]
    from_cache: bool
    last_verified_at: datetime | None

    @classmethod
    def from_entry(cls, entry: MembershipCacheEntry, from_cache: bool) -> "MembershipStatus":
        return cls(
            has_membership=entry.has_membership,
            segment_ids=list(entry.segment_ids),
            from_cache=from_cache,
            last_verified_at=entry.last_verified_at,
        )

    def to_dict(self) -> dict:
        return {
            "has_membership": self.has_membership,
            "segment_ids": list(self.segment_ids),
            "from_cache": self.from_cache,
            "last_verified_at": to_iso(self.last_verified_at),
        }


class MembershipCache:
    def __init__(
        self,
        db: CheckinDatabase,
        commerce: CommerceClient,
        segments: SegmentRegistry,
        settings: CheckinSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.commerce = commerce
        self.segments = segments
        self.ttl = timedelta(hours=settings.cache_ttl_hours)
        self.refresh_age = timedelta(hours=settings.refresh_age_hours)
        self.clock = clock

    async def get_membership_status(self, customer_id: str | None, force_refresh: bool = False) -> MembershipStatus:
        if not customer_id:
            raise InvalidInput("Customer ID is required")
        if not force_refresh:
            cached = self.get_cached_entry(customer_id)
            if cached is not None and self.is_fresh(cached):
                return MembershipStatus.from_entry(cached, from_cache=True)
        return await self.refresh_membership(customer_id)

    async def refresh_membership(self, customer_id: str | None, *, fallback_to_cache: bool = True) -> MembershipStatus:
        if not customer_id:
            raise InvalidInput("Customer ID is required")
        try:
            customer = await self.commerce.get_customer(customer_id)
            configured = set(self.segments.get_configured_segment_ids())
            matched = sorted(set(customer.segment_ids) & configured)
            entry = self.store_entry(customer, segment_ids=matched, has_membership=bool(matched))
        except Exception as exc:
            if not fallback_to_cache:
                raise
            logger.error("Error refreshing membership", customer_id=customer_id, error=str(exc))
            cached = self.get_cached_entry(customer_id)
            if cached is None:
                raise
            logger.warning("Using stale cache entry after refresh error", customer_id=customer_id)
            return MembershipStatus.from_entry(cached, from_cache=True)
        return MembershipStatus.from_entry(entry, from_cache=False)

    def store_entry(
        self,
        customer: CustomerRecord,
        *,
        segment_ids: list[str],
        has_membership: bool,
        verified_at: datetime | None = None,
    ) -> MembershipCacheEntry:
        """Replace every column of the customer's row with a new snapshot."""
        entry = MembershipCacheEntry(
            customer_id=customer.id,
            has_membership=has_membership,
            segment_ids=list(segment_ids),
            given_name=customer.given_name or "",
            family_name=customer.family_name or "",
            email=customer.email or "",
            phone=customer.phone or "",
            reference_id=customer.reference_id or "",
            address_line1=customer.address_line1 or "",
            locality=customer.locality or "",
            postal_code=customer.postal_code or "",
            last_verified_at=verified_at or self.clock(),
        )
        self.db.execute(
            """
            INSERT INTO membership_cache (
                customer_id, has_membership, segment_ids, given_name, family_name, email, phone,
                reference_id, address_line1, locality, postal_code, last_verified_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (customer_id) DO UPDATE SET
                has_membership = excluded.has_membership,
                segment_ids = excluded.segment_ids,
                given_name = excluded.given_name,
                family_name = excluded.family_name,
                email = excluded.email,
                phone = excluded.phone,
                reference_id = excluded.reference_id,
                address_line1 = excluded.address_line1,
                locality = excluded.locality,
                postal_code = excluded.postal_code,
                last_verified_at = excluded.last_verified_at
            """,
            (
                entry.customer_id,
                1 if entry.has_membership else 0,
                json.dumps(entry.segment_ids),
                entry.given_name,
                entry.family_name,
                entry.email,
                entry.phone,
                entry.reference_id,
                entry.address_line1,
                entry.locality,
                entry.postal_code,
                to_iso(entry.last_verified_at),
            ),
        )
        return entry

    def get_cached_entry(self, customer_id: str) -> MembershipCacheEntry | None:
        try:
            row = self.db.fetchone("SELECT * FROM membership_cache WHERE customer_id = ?", (customer_id,))
        except StorageError as exc:
            logger.error("Error reading membership cache", customer_id=customer_id, error=str(exc))
            return None
        return MembershipCacheEntry.from_row(row) if row else None

    def is_fresh(self, entry: MembershipCacheEntry) -> bool:
        if entry.last_verified_at is None:
            return False
        return self.clock() - entry.last_verified_at < self.ttl

    def invalidate_cache(self, customer_id: str | None) -> None:
        if not customer_id:
            return
        try:
            self.db.execute("DELETE FROM membership_cache WHERE customer_id = ?", (customer_id,))
        except StorageError as exc:
            logger.error("Error invalidating cache entry", customer_id=customer_id, error=str(exc))

    def clear_cache(self) -> dict:
        deleted = self.db.execute("DELETE FROM membership_cache")
        logger.info("Membership cache cleared", deleted=deleted)
        return {"deleted": deleted}

    def search_cache(self, search_type: str, value: str | None, fuzzy: bool = True) -> list[MembershipCacheEntry]:
        term = (value or "").strip().lower()
        if not term or search_type not in SEARCH_TYPES:
            return []
        if search_type == "name":
            columns = ["LOWER(given_name)", "LOWER(family_name)", "LOWER(given_name || ' ' || family_name)"]
        elif search_type == "lot":
            columns = ["LOWER(reference_id)"]
        else:
            columns = [f"LOWER({search_type})"]
        if fuzzy:
            escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            param = f"%{escaped}%"
            where = " OR ".join(f"{col} LIKE ? ESCAPE '\\'" for col in columns)
        else:
            param = term
            where = " OR ".join(f"{col} = ?" for col in columns)
        try:
            rows = self.db.fetchall(
                f"""
                SELECT * FROM membership_cache
                WHERE {where}
                ORDER BY family_name ASC, given_name ASC
                LIMIT {SEARCH_LIMIT}
                """,
                tuple(param for _ in columns),
            )
        except StorageError as exc:
            logger.error("Error searching membership cache", search_type=search_type, error=str(exc))
            return []
        return [MembershipCacheEntry.from_row(r) for r in rows]

    def cache_status(self) -> dict:
        row = self.db.fetchone(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(has_membership), 0) AS members,
                   MIN(last_verified_at) AS oldest,
                   MAX(last_verified_at) AS newest
            FROM membership_cache
            """
        ) or {}
        total = int(row.get("total") or 0)
        fresh_cutoff = to_iso(self.clock() - self.ttl)
        fresh_row = self.db.fetchone(
            "SELECT COUNT(*) AS c FROM membership_cache WHERE last_verified_at >= ?", (fresh_cutoff,)
        ) or {}
        fresh = int(fresh_row.get("c") or 0)
        oldest = parse_ts(row.get("oldest"))
        refresh_recommended = total == 0 or oldest is None or self.clock() - oldest >= self.refresh_age
        return {
            "total": total,
            "members": int(row.get("members") or 0),
            "fresh": fresh,
            "stale": total - fresh,
            "oldest_verified_at": to_iso(oldest),
            "newest_verified_at": to_iso(parse_ts(row.get("newest"))),
            "refresh_recommended": refresh_recommended,
        }
