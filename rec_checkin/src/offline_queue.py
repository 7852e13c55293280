"""Durable buffer of check-ins awaiting confirmation by the commerce system.

Rows start ``pending``. ``sync_queue`` drains the pending rows once, oldest
first; a failed sync leaves the row pending for the next pass and bumps its
attempt counter. Once a row reaches ``queue_max_sync_attempts`` failures it is
parked as ``failed`` and only comes back if a caller re-queues it.
"""

import inspect
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from loguru import logger

from checkin_config import CheckinSettings
from checkin_db import CheckinDatabase, parse_ts, to_iso, utcnow
from checkin_errors import MissingFields, StorageError


STATUSES = ("pending", "synced", "failed")

SyncFn = Callable[["CheckinQueueRecord"], Awaitable[Any] | Any]


@dataclass
class CheckinQueueRecord:
    id: int
    customer_id: str
    order_id: str
    guest_count: int
    status: str
    created_at: datetime
    synced_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "CheckinQueueRecord":
        return cls(
            id=int(row["id"]),
            customer_id=row["customer_id"],
            order_id=row["order_id"],
            guest_count=int(row["guest_count"]),
            status=row["status"],
            created_at=parse_ts(row["created_at"]),
            synced_at=parse_ts(row.get("synced_at")),
            attempts=int(row.get("attempts") or 0),
            last_error=row.get("last_error"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = to_iso(self.created_at)
        data["synced_at"] = to_iso(self.synced_at)
        return data


class OfflineQueue:
    def __init__(self, db: CheckinDatabase, settings: CheckinSettings, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.max_sync_attempts = max(int(settings.queue_max_sync_attempts), 0)
        self.clock = clock

    def queue_checkin(self, customer_id: str | None, order_id: str | None, guest_count: int | None) -> CheckinQueueRecord:
        # guest_count of 0 is a real value; only None counts as missing
        if not customer_id or not order_id or guest_count is None:
            raise MissingFields(
                "Missing required check-in data: customer_id, order_id, and guest_count are required"
            )
        created_at = self.clock()
        record_id = self.db.insert(
            "INSERT INTO checkin_queue (customer_id, order_id, guest_count, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (customer_id, order_id, int(guest_count), "pending", to_iso(created_at)),
        )
        logger.info("Queued check-in", queue_id=record_id, customer_id=customer_id, order_id=order_id, guests=guest_count)
        return CheckinQueueRecord(
            id=record_id,
            customer_id=customer_id,
            order_id=order_id,
            guest_count=int(guest_count),
            status="pending",
            created_at=created_at,
        )

    def get_record(self, queue_id: int) -> CheckinQueueRecord | None:
        row = self.db.fetchone("SELECT * FROM checkin_queue WHERE id = ?", (queue_id,))
        return CheckinQueueRecord.from_row(row) if row else None

    def get_pending_checkins(self, limit: int = 100) -> list[CheckinQueueRecord]:
        try:
            rows = self.db.fetchall(
                "SELECT * FROM checkin_queue WHERE status = 'pending' ORDER BY created_at ASC, id ASC LIMIT ?",
                (int(limit),),
            )
        except StorageError as exc:
            logger.error("Error reading pending check-ins", error=str(exc))
            return []
        return [CheckinQueueRecord.from_row(r) for r in rows]

    def mark_as_synced(self, queue_id: int) -> bool:
        try:
            changed = self.db.execute(
                "UPDATE checkin_queue SET status = 'synced', synced_at = ?, last_error = NULL WHERE id = ? AND status <> 'synced'",
                (to_iso(self.clock()), queue_id),
            )
        except StorageError as exc:
            logger.error("Error marking check-in synced", queue_id=queue_id, error=str(exc))
            return False
        return changed > 0

    def mark_as_failed(self, queue_id: int, reason: str | None = None) -> bool:
        try:
            changed = self.db.execute(
                "UPDATE checkin_queue SET status = 'failed', last_error = COALESCE(?, last_error) WHERE id = ?",
                (reason, queue_id),
            )
        except StorageError as exc:
            logger.error("Error marking check-in failed", queue_id=queue_id, error=str(exc))
            return False
        if reason:
            logger.error("Check-in sync failed permanently", queue_id=queue_id, reason=reason)
        return changed > 0

    def _record_attempt_failure(self, record: CheckinQueueRecord, error: str) -> bool:
        attempts = record.attempts + 1
        self.db.execute(
            "UPDATE checkin_queue SET attempts = ?, last_error = ? WHERE id = ?",
            (attempts, error, record.id),
        )
        if self.max_sync_attempts and attempts >= self.max_sync_attempts:
            return self.mark_as_failed(record.id, f"gave up after {attempts} attempts: {error}")
        return False

    async def sync_queue(self, sync_fn: SyncFn | None = None) -> dict:
        """Push every currently pending check-in once through ``sync_fn``."""
        pending = self.get_pending_checkins()
        synced = 0
        failed = 0
        if not pending:
            return {"synced": 0, "failed": 0}

        logger.info("Syncing queued check-ins", count=len(pending))
        for record in pending:
            try:
                if sync_fn is not None:
                    result = sync_fn(record)
                    if inspect.isawaitable(result):
                        await result
                else:
                    logger.debug("No sync function configured; marking check-in synced", queue_id=record.id)
            except Exception as exc:
                failed += 1
                logger.error("Error syncing check-in", queue_id=record.id, error=str(exc))
                self._record_attempt_failure(record, str(exc))
                continue
            if self.mark_as_synced(record.id):
                synced += 1
            else:
                failed += 1

        logger.info("Check-in sync complete", synced=synced, failed=failed)
        return {"synced": synced, "failed": failed}

    def clear_old_synced_checkins(self, days_old: int = 30) -> int:
        cutoff = to_iso(self.clock() - timedelta(days=days_old))
        try:
            deleted = self.db.execute(
                "DELETE FROM checkin_queue WHERE status = 'synced' AND synced_at < ?", (cutoff,)
            )
        except StorageError as exc:
            logger.error("Error clearing old check-ins", error=str(exc))
            return 0
        logger.info("Cleared old synced check-ins", deleted=deleted, days_old=days_old)
        return deleted

    def get_queue_stats(self) -> dict:
        stats = {"pending": 0, "synced": 0, "failed": 0, "total": 0}
        try:
            rows = self.db.fetchall("SELECT status, COUNT(*) AS count FROM checkin_queue GROUP BY status")
        except StorageError as exc:
            logger.error("Error reading queue stats", error=str(exc))
            return stats
        for row in rows:
            if row["status"] in STATUSES:
                stats[row["status"]] = int(row["count"])
            stats["total"] += int(row["count"])
        return stats
