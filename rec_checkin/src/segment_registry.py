from dataclasses import dataclass, asdict

from loguru import logger

from checkin_db import CheckinDatabase
from checkin_errors import InvalidInput, SegmentExists, SegmentNotFound, StorageError


@dataclass
class SegmentDescriptor:
    id: int
    segment_id: str
    display_name: str
    sort_order: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "SegmentDescriptor":
        return cls(
            id=row["id"],
            segment_id=row["segment_id"],
            display_name=row["display_name"],
            sort_order=int(row.get("sort_order") or 0),
        )

    def to_dict(self) -> dict:
        return asdict(self)


_SELECT = "SELECT id, segment_id, display_name, sort_order FROM customer_segments"


class SegmentRegistry:
    """External segments that count as membership, with display names and ordering."""

    def __init__(self, db: CheckinDatabase):
        self.db = db

    def list_segments(self) -> list[SegmentDescriptor]:
        try:
            rows = self.db.fetchall(f"{_SELECT} ORDER BY sort_order ASC, display_name ASC")
        except StorageError as exc:
            logger.error("Error listing segments", error=str(exc))
            return []
        return [SegmentDescriptor.from_row(r) for r in rows]

    def get_configured_segment_ids(self) -> list[str]:
        return [s.segment_id for s in self.list_segments()]

    def get_segment(self, segment_id: str) -> SegmentDescriptor | None:
        row = self.db.fetchone(f"{_SELECT} WHERE segment_id = ?", (segment_id,))
        return SegmentDescriptor.from_row(row) if row else None

    def get_display_name(self, segment_id: str) -> str | None:
        segment = self.get_segment(segment_id)
        return segment.display_name if segment else None

    def display_names_for(self, segment_ids: list[str]) -> list[str]:
        if not segment_ids:
            return []
        by_id = {s.segment_id: s.display_name for s in self.list_segments()}
        return [by_id.get(sid, sid) for sid in segment_ids]

    def add_segment(self, segment_id: str, display_name: str, sort_order: int | None = 0) -> SegmentDescriptor:
        segment_id = (segment_id or "").strip()
        display_name = str(display_name or "").strip()
        if not segment_id or not display_name:
            raise InvalidInput("segment_id and display_name are required")
        if self.get_segment(segment_id) is not None:
            raise SegmentExists(f"Segment {segment_id} already exists")
        try:
            self.db.insert(
                "INSERT INTO customer_segments (segment_id, display_name, sort_order) VALUES (?, ?, ?)",
                (segment_id, display_name, int(sort_order or 0)),
            )
        except StorageError as exc:
            if "unique" in str(exc).lower():
                raise SegmentExists(f"Segment {segment_id} already exists") from exc
            raise
        logger.info("Segment added", segment_id=segment_id, display_name=display_name)
        return self.get_segment(segment_id)

    def update_segment(
        self, segment_id: str, display_name: str | None = None, sort_order: int | None = None
    ) -> SegmentDescriptor:
        if not segment_id:
            raise InvalidInput("segment_id is required")
        existing = self.get_segment(segment_id)
        if existing is None:
            raise SegmentNotFound(f"Segment {segment_id} not found")
        clauses = []
        values: list = []
        if display_name is not None:
            name = str(display_name).strip()
            if not name:
                raise InvalidInput("display_name cannot be blank")
            clauses.append("display_name = ?")
            values.append(name)
        if sort_order is not None:
            clauses.append("sort_order = ?")
            values.append(int(sort_order))
        if not clauses:
            return existing
        values.append(segment_id)
        self.db.execute(f"UPDATE customer_segments SET {', '.join(clauses)} WHERE segment_id = ?", tuple(values))
        logger.info("Segment updated", segment_id=segment_id)
        return self.get_segment(segment_id)

    def delete_segment(self, segment_id: str) -> None:
        # Cached verdicts are not touched; they are corrected on the next refresh.
        if not segment_id:
            raise InvalidInput("segment_id is required")
        deleted = self.db.execute("DELETE FROM customer_segments WHERE segment_id = ?", (segment_id,))
        if deleted == 0:
            raise SegmentNotFound(f"Segment {segment_id} not found")
        logger.info("Segment deleted", segment_id=segment_id)
