"""Bulk and full-roster membership refreshes.

Both modes share :func:`batch_runner.run_in_batches`. Progress of the
full-roster job is published to a :class:`RefreshProgress` object that the
application creates once and hands to every engine it builds, so a status
request sees the job started by a different request.
"""

import asyncio
import threading
from dataclasses import dataclass, replace
from datetime import datetime

from loguru import logger

from batch_runner import ProgressCallback, run_in_batches
from checkin_config import CheckinSettings
from checkin_db import to_iso, utcnow
from checkin_errors import ErrorKind, NoSegmentsConfigured, RefreshInProgress
from commerce_client import CommerceClient
from membership_cache import MembershipCache
from retry_policy import RetryPolicy, Sleep, run_with_retry
from segment_registry import SegmentRegistry


@dataclass
class ProgressSnapshot:
    in_progress: bool = False
    total: int = 0
    processed: int = 0
    members_found: int = 0
    errors: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "total": self.total,
            "processed": self.processed,
            "members_found": self.members_found,
            "errors": self.errors,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "last_error": self.last_error,
        }


class RefreshProgress:
    """Lock-guarded progress of the one full refresh a process may run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state = ProgressSnapshot()

    def begin(self) -> None:
        with self._lock:
            if self._state.in_progress:
                raise RefreshInProgress()
            self._state = ProgressSnapshot(in_progress=True, started_at=utcnow())

    def update(self, **fields) -> None:
        with self._lock:
            for key, value in fields.items():
                setattr(self._state, key, value)

    def finish(self, error: str | None = None) -> None:
        with self._lock:
            self._state.in_progress = False
            self._state.finished_at = utcnow()
            self._state.last_error = error

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return replace(self._state)

    @property
    def in_progress(self) -> bool:
        with self._lock:
            return self._state.in_progress


_REPORTED_KINDS = (ErrorKind.PERMISSION, ErrorKind.RATE_LIMITED)


def reported_error_type(kind: ErrorKind) -> str:
    return kind.value if kind in _REPORTED_KINDS else ErrorKind.OTHER.value


@dataclass
class BulkRefreshResult:
    customer_id: str
    has_membership: bool
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict:
        data = {"customer_id": self.customer_id, "has_membership": self.has_membership}
        if self.error is not None:
            data["error"] = self.error
            data["error_type"] = self.error_type
        return data


class BulkRefreshEngine:
    def __init__(
        self,
        cache: MembershipCache,
        commerce: CommerceClient,
        segments: SegmentRegistry,
        settings: CheckinSettings,
        progress: RefreshProgress,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.cache = cache
        self.commerce = commerce
        self.segments = segments
        self.settings = settings
        self.progress = progress
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.sleep = sleep

    def _batch_options(self, concurrency, rate_limit_ms, request_delay_ms) -> dict:
        return {
            "concurrency": concurrency if concurrency is not None else self.settings.bulk_concurrency,
            "rate_limit_ms": rate_limit_ms if rate_limit_ms is not None else self.settings.bulk_rate_limit_ms,
            "request_delay_ms": (
                request_delay_ms if request_delay_ms is not None else self.settings.bulk_request_delay_ms
            ),
        }

    async def bulk_refresh(
        self,
        customer_ids: list[str],
        concurrency: int | None = None,
        rate_limit_ms: int | None = None,
        request_delay_ms: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[BulkRefreshResult]:
        if not customer_ids:
            return []

        async def refresh_one(customer_id: str):
            return await self.cache.refresh_membership(customer_id, fallback_to_cache=False)

        outcomes = await run_in_batches(
            list(customer_ids),
            refresh_one,
            policy=self.policy,
            on_progress=on_progress,
            sleep=self.sleep,
            **self._batch_options(concurrency, rate_limit_ms, request_delay_ms),
        )

        results = []
        for outcome in outcomes:
            if outcome.ok:
                results.append(BulkRefreshResult(
                    customer_id=outcome.item,
                    has_membership=outcome.value.has_membership,
                    attempts=outcome.attempts,
                ))
                continue
            logger.error(
                "Bulk refresh failed for customer",
                customer_id=outcome.item,
                error=str(outcome.error),
                error_type=outcome.error_type.value,
                attempts=outcome.attempts,
            )
            results.append(BulkRefreshResult(
                customer_id=outcome.item,
                has_membership=False,
                error=str(outcome.error),
                error_type=reported_error_type(outcome.error_type),
                attempts=outcome.attempts,
            ))

        members_found = sum(1 for r in results if r.has_membership)
        errors = sum(1 for r in results if r.error is not None)
        logger.info("Bulk refresh complete", total=len(results), members_found=members_found, errors=errors)
        return results

    def _require_segments(self) -> list[str]:
        segment_ids = self.segments.get_configured_segment_ids()
        if not segment_ids:
            raise NoSegmentsConfigured()
        return segment_ids

    async def refresh_all_customers(self, on_progress: ProgressCallback | None = None) -> ProgressSnapshot:
        self._require_segments()
        self.progress.begin()
        return await self._run_full_refresh(on_progress)

    def start_background_refresh(self) -> threading.Thread:
        """Claim the refresh slot now and run the job on a worker thread."""
        self._require_segments()
        self.progress.begin()
        thread = threading.Thread(target=self._run_in_thread, name="membership-refresh", daemon=True)
        thread.start()
        return thread

    def _run_in_thread(self) -> None:
        try:
            asyncio.run(self._run_full_refresh(None))
        except Exception:
            logger.exception("Background membership refresh failed")

    async def _collect_members(self, segment_ids: list[str]) -> dict[str, list[str]]:
        members: dict[str, list[str]] = {}
        for segment_id in segment_ids:
            result = await run_with_retry(
                lambda: self.commerce.search_customers_by_segment(segment_id), self.policy, self.sleep
            )
            if not result.ok:
                raise result.error
            for customer_id in result.value:
                bucket = members.setdefault(customer_id, [])
                if segment_id not in bucket:
                    bucket.append(segment_id)
        return members

    async def _run_full_refresh(self, on_progress: ProgressCallback | None) -> ProgressSnapshot:
        error = None
        try:
            segment_ids = self._require_segments()
            members = await self._collect_members(segment_ids)
            self.progress.update(total=len(members), members_found=len(members), processed=0, errors=0)
            logger.info("Full membership refresh started", segments=len(segment_ids), members=len(members))

            self.cache.clear_cache()

            async def store_member(customer_id: str):
                customer = await self.commerce.get_customer(customer_id)
                return self.cache.store_entry(
                    customer, segment_ids=sorted(members[customer_id]), has_membership=True
                )

            def report(processed: int, total: int) -> None:
                self.progress.update(processed=processed)
                if on_progress is not None:
                    on_progress(processed, total)

            outcomes = await run_in_batches(
                list(members),
                store_member,
                policy=self.policy,
                on_progress=report,
                sleep=self.sleep,
                **self._batch_options(None, None, None),
            )
            failed = [o for o in outcomes if not o.ok]
            for outcome in failed:
                logger.warning(
                    "Could not cache member details",
                    customer_id=outcome.item,
                    error=str(outcome.error),
                    error_type=outcome.error_type.value,
                )
            self.progress.update(errors=len(failed))
            logger.info("Full membership refresh complete", members_found=len(members), errors=len(failed))
        except Exception as exc:
            error = str(exc)
            logger.error("Full membership refresh aborted", error=error)
            raise
        finally:
            self.progress.finish(error)
        return self.progress.snapshot()
