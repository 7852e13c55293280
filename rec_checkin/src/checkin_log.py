from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from checkin_db import CheckinDatabase, parse_ts, to_iso, utcnow


@dataclass
class CheckinLogRecord:
    id: int
    customer_id: str
    order_id: str | None
    guest_count: int
    timestamp: datetime
    synced_to_external: bool = False

    @classmethod
    def from_row(cls, row: dict) -> "CheckinLogRecord":
        return cls(
            id=int(row["id"]),
            customer_id=row["customer_id"],
            order_id=row.get("order_id"),
            guest_count=int(row["guest_count"]),
            timestamp=parse_ts(row["timestamp"]),
            synced_to_external=bool(row.get("synced_to_external")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "guest_count": self.guest_count,
            "timestamp": to_iso(self.timestamp),
            "synced_to_external": self.synced_to_external,
        }


class CheckinLog:
    """Append-only history of completed check-ins."""

    def __init__(self, db: CheckinDatabase, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def record_checkin(
        self,
        customer_id: str,
        order_id: str | None,
        guest_count: int,
        synced_to_external: bool = False,
    ) -> CheckinLogRecord:
        timestamp = self.clock()
        record_id = self.db.insert(
            "INSERT INTO checkin_log (customer_id, order_id, guest_count, timestamp, synced_to_external) VALUES (?, ?, ?, ?, ?)",
            (customer_id, order_id, int(guest_count), to_iso(timestamp), 1 if synced_to_external else 0),
        )
        logger.debug("Check-in logged", log_id=record_id, customer_id=customer_id, order_id=order_id)
        return CheckinLogRecord(
            id=record_id,
            customer_id=customer_id,
            order_id=order_id,
            guest_count=int(guest_count),
            timestamp=timestamp,
            synced_to_external=synced_to_external,
        )

    def find_by_order(self, order_id: str, within_days: int | None = None) -> CheckinLogRecord | None:
        if not order_id:
            return None
        if within_days is None:
            row = self.db.fetchone(
                "SELECT * FROM checkin_log WHERE order_id = ? ORDER BY timestamp DESC LIMIT 1", (order_id,)
            )
        else:
            since = to_iso(self.clock() - timedelta(days=within_days))
            row = self.db.fetchone(
                "SELECT * FROM checkin_log WHERE order_id = ? AND timestamp >= ? ORDER BY timestamp DESC LIMIT 1",
                (order_id, since),
            )
        return CheckinLogRecord.from_row(row) if row else None

    def recent_for_customer(self, customer_id: str, limit: int = 20) -> list[CheckinLogRecord]:
        rows = self.db.fetchall(
            "SELECT * FROM checkin_log WHERE customer_id = ? ORDER BY timestamp DESC LIMIT ?",
            (customer_id, int(limit)),
        )
        return [CheckinLogRecord.from_row(r) for r in rows]

    def count_since(self, since: datetime) -> int:
        row = self.db.fetchone("SELECT COUNT(*) AS c FROM checkin_log WHERE timestamp >= ?", (to_iso(since),))
        return int((row or {}).get("c") or 0)
