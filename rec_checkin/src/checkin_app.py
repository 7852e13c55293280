import asyncio
import hmac
import os
from dataclasses import dataclass
from datetime import timedelta

import click
from flask import Flask, abort, jsonify, redirect, request, session, url_for
from loguru import logger

from bulk_refresh import BulkRefreshEngine, RefreshProgress
from checkin_config import CheckinSettings
from checkin_db import CheckinDatabase, utcnow
from checkin_errors import (
    CheckinError,
    CommerceError,
    ConfigurationError,
    InvalidInput,
    NotFound,
    RefreshInProgress,
    SegmentExists,
    SegmentNotFound,
)
from checkin_log import CheckinLog
from checkin_logging import configure_logging
from checkin_verification import CheckinVerification
from commerce_client import CommerceClient, SquareCommerceClient
from demo_commerce import DEMO_ITEM_ID, DEMO_VARIANT_ID, DemoCommerceClient
from membership_cache import MembershipCache
from offline_queue import CheckinQueueRecord, OfflineQueue
from segment_registry import SegmentRegistry


_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class CheckinServices:
    settings: CheckinSettings
    db: CheckinDatabase
    commerce: CommerceClient
    segments: SegmentRegistry
    cache: MembershipCache
    refresher: BulkRefreshEngine
    queue: OfflineQueue
    checkin_log: CheckinLog
    verification: CheckinVerification
    progress: RefreshProgress


def build_commerce_client(settings: CheckinSettings) -> CommerceClient:
    if settings.demo_mode:
        return DemoCommerceClient()
    if not settings.square_access_token:
        raise ConfigurationError("SQUARE_ACCESS_TOKEN is not configured. Set CHECKIN_DEMO_MODE=1 to run without Square.")
    return SquareCommerceClient(settings)


def build_services(
    settings: CheckinSettings,
    commerce: CommerceClient | None = None,
    progress: RefreshProgress | None = None,
) -> CheckinServices:
    if settings.demo_mode and not settings.checkin_catalog_item_id:
        settings = settings.with_overrides(checkin_catalog_item_id=DEMO_ITEM_ID, checkin_variant_id=DEMO_VARIANT_ID)
    db = CheckinDatabase(settings)
    commerce = commerce or build_commerce_client(settings)
    progress = progress or RefreshProgress()
    segments = SegmentRegistry(db)
    cache = MembershipCache(db, commerce, segments, settings)
    log = CheckinLog(db)
    return CheckinServices(
        settings=settings,
        db=db,
        commerce=commerce,
        segments=segments,
        cache=cache,
        refresher=BulkRefreshEngine(cache, commerce, segments, settings, progress),
        queue=OfflineQueue(db, settings),
        checkin_log=log,
        verification=CheckinVerification(commerce, cache, settings, checkin_log=log),
        progress=progress,
    )


def confirm_with_commerce(services: CheckinServices):
    """Sync function for the offline queue: the order must still exist upstream."""

    async def confirm(record: CheckinQueueRecord) -> None:
        await services.commerce.get_order(record.order_id)

    return confirm


def _error_status(exc: CheckinError) -> int:
    if isinstance(exc, InvalidInput):
        return 400
    if isinstance(exc, (NotFound, SegmentNotFound)):
        return 404
    if isinstance(exc, (SegmentExists, RefreshInProgress)):
        return 409
    if isinstance(exc, ConfigurationError):
        return 412
    if isinstance(exc, CommerceError):
        return 502
    return 500


def _parse_guest_count(raw) -> int:
    if raw is None or raw == "":
        raise InvalidInput("guest_count is required")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidInput("guest_count must be a whole number")
    if value < 0:
        raise InvalidInput("guest_count cannot be negative")
    return value


def create_app(
    settings: CheckinSettings | None = None,
    commerce: CommerceClient | None = None,
    progress: RefreshProgress | None = None,
):
    settings = settings or CheckinSettings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    services = build_services(settings, commerce=commerce, progress=progress)
    services.db.init_db()

    app = Flask(__name__)
    app.secret_key = settings.session_secret
    app.extensions["checkin"] = services

    @app.errorhandler(CheckinError)
    def handle_checkin_error(exc: CheckinError):
        status = _error_status(exc)
        if status >= 500:
            logger.error("Request failed", path=request.path, error=str(exc))
        return jsonify({"ok": False, "error": str(exc)}), status

    def require_admin():
        if not session.get("admin"):
            abort(401)

    @app.get("/")
    def root():
        return redirect(url_for("healthz"))

    @app.get("/healthz")
    def healthz():
        return "ok", 200

    @app.post("/admin/login")
    def admin_login_post():
        payload = request.get_json(silent=True) or {}
        pin = str(payload.get("pin") or request.form.get("pin") or "")
        expected = settings.admin_pin
        if expected and pin and hmac.compare_digest(pin, expected):
            session["admin"] = True
            return jsonify({"ok": True})
        return jsonify({"ok": False, "error": "Invalid PIN"}), 401

    @app.get("/admin/logout")
    def admin_logout():
        session.pop("admin", None)
        return jsonify({"ok": True})

    # Kiosk

    @app.get("/api/checkin/detect")
    def api_detect_input():
        q = request.args.get("q") or ""
        return jsonify({"ok": True, "type": CheckinVerification.detect_input_type(q)})

    @app.post("/api/checkin/verify")
    async def api_verify():
        payload = request.get_json(silent=True) or {}
        check_membership = str(payload.get("check_membership", "1")).strip().lower() in _TRUTHY
        result = await services.verification.verify_checkin_order(
            payload.get("order_id"), check_membership=check_membership
        )
        return jsonify({"ok": result.valid, **result.to_dict()}), (200 if result.valid else 400)

    @app.post("/api/checkin")
    async def api_checkin():
        payload = request.get_json(silent=True) or {}
        order_id = (payload.get("order_id") or "").strip()
        guest_count = _parse_guest_count(payload.get("guest_count"))
        result = await services.verification.verify_checkin_order(order_id)
        if not result.valid and not result.retryable:
            return jsonify({"ok": False, "error": result.reason}), 400

        if result.valid:
            customer_id = result.customer_id
        else:
            # Commerce system unreachable: accept the kiosk's customer and sync later
            customer_id = (payload.get("customer_id") or "").strip()
            if not customer_id:
                return jsonify({"ok": False, "error": result.reason, "retryable": True}), 503
            logger.warning("Buffering check-in while commerce is unreachable", order_id=order_id, customer_id=customer_id)

        entry = services.checkin_log.record_checkin(
            customer_id, order_id, guest_count, synced_to_external=result.valid
        )
        queued = services.queue.queue_checkin(customer_id, order_id, guest_count)
        if not result.valid:
            return jsonify({
                "ok": True,
                "queued": True,
                "customer_id": customer_id,
                "checkin": entry.to_dict(),
                "queue_id": queued.id,
            }), 202
        return jsonify({
            "ok": True,
            "customer_id": customer_id,
            "has_membership": result.has_membership,
            "checkin": entry.to_dict(),
            "queue_id": queued.id,
        }), 201

    @app.get("/api/kiosk/status")
    def api_kiosk_status():
        now = utcnow()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return jsonify({
            "ok": True,
            "today_total": services.checkin_log.count_since(midnight),
            "last_hour_total": services.checkin_log.count_since(now - timedelta(hours=1)),
            "pending_sync": services.queue.get_queue_stats()["pending"],
        })

    @app.get("/api/members/search")
    def member_search():
        require_admin()
        search_type = (request.args.get("type") or "name").strip().lower()
        fuzzy = (request.args.get("fuzzy") or "1").strip().lower() in _TRUTHY
        rows = services.cache.search_cache(search_type, request.args.get("q"), fuzzy=fuzzy)
        return jsonify([r.to_dict() for r in rows])

    @app.get("/api/members/<customer_id>/membership")
    async def member_membership(customer_id: str):
        force = (request.args.get("refresh") or "0").strip().lower() in _TRUTHY
        status = await services.cache.get_membership_status(customer_id, force_refresh=force)
        data = status.to_dict()
        data["segment_names"] = services.segments.display_names_for(status.segment_ids)
        return jsonify({"ok": True, **data})

    @app.get("/api/members/<customer_id>/checkins")
    def member_checkins(customer_id: str):
        require_admin()
        try:
            limit = min(max(int(request.args.get("limit") or 20), 1), 100)
        except (TypeError, ValueError):
            raise InvalidInput("limit must be a whole number")
        rows = services.checkin_log.recent_for_customer(customer_id, limit=limit)
        return jsonify({"ok": True, "checkins": [r.to_dict() for r in rows]})

    # Admin: membership cache

    @app.get("/api/admin/cache/status")
    def admin_cache_status():
        require_admin()
        return jsonify({"ok": True, **services.cache.cache_status(), "refresh": services.progress.snapshot().to_dict()})

    @app.get("/api/admin/cache/progress")
    def admin_cache_progress():
        require_admin()
        return jsonify({"ok": True, **services.progress.snapshot().to_dict()})

    @app.post("/api/admin/cache/refresh")
    def admin_cache_refresh():
        require_admin()
        services.refresher.start_background_refresh()
        return jsonify({"ok": True, **services.progress.snapshot().to_dict()}), 202

    @app.post("/api/admin/cache/clear")
    def admin_cache_clear():
        require_admin()
        return jsonify({"ok": True, **services.cache.clear_cache()})

    @app.delete("/api/admin/cache/<customer_id>")
    def admin_cache_invalidate(customer_id: str):
        require_admin()
        services.cache.invalidate_cache(customer_id)
        return jsonify({"ok": True})

    # Admin: segments

    @app.get("/api/admin/segments")
    def admin_segments():
        require_admin()
        return jsonify({"ok": True, "segments": [s.to_dict() for s in services.segments.list_segments()]})

    @app.get("/api/admin/segments/external")
    async def admin_external_segments():
        require_admin()
        segments = await services.commerce.list_segments()
        configured = set(services.segments.get_configured_segment_ids())
        return jsonify({
            "ok": True,
            "segments": [{"id": s.id, "name": s.name, "configured": s.id in configured} for s in segments],
        })

    @app.post("/api/admin/segments")
    def admin_add_segment():
        require_admin()
        payload = request.get_json(silent=True) or {}
        segment = services.segments.add_segment(
            payload.get("segment_id"), payload.get("display_name"), payload.get("sort_order")
        )
        return jsonify({"ok": True, "segment": segment.to_dict()}), 201

    @app.put("/api/admin/segments/<segment_id>")
    def admin_update_segment(segment_id: str):
        require_admin()
        payload = request.get_json(silent=True) or {}
        segment = services.segments.update_segment(
            segment_id, display_name=payload.get("display_name"), sort_order=payload.get("sort_order")
        )
        return jsonify({"ok": True, "segment": segment.to_dict()})

    @app.delete("/api/admin/segments/<segment_id>")
    def admin_delete_segment(segment_id: str):
        require_admin()
        services.segments.delete_segment(segment_id)
        return jsonify({"ok": True})

    # Admin: offline queue

    @app.get("/api/admin/queue/stats")
    def admin_queue_stats():
        require_admin()
        return jsonify({"ok": True, **services.queue.get_queue_stats()})

    @app.post("/api/admin/queue/sync")
    async def admin_queue_sync():
        require_admin()
        summary = await services.queue.sync_queue(confirm_with_commerce(services))
        return jsonify({"ok": True, **summary})

    @app.post("/api/admin/queue/cleanup")
    def admin_queue_cleanup():
        require_admin()
        payload = request.get_json(silent=True) or {}
        try:
            days_old = int(payload.get("days_old") or 30)
        except (TypeError, ValueError):
            raise InvalidInput("days_old must be a whole number")
        return jsonify({"ok": True, "deleted": services.queue.clear_old_synced_checkins(days_old)})

    @app.cli.command("sync-queue")
    def sync_queue_command():
        """Push pending offline check-ins to the commerce system once."""
        summary = asyncio.run(services.queue.sync_queue(confirm_with_commerce(services)))
        click.echo(f"synced={summary['synced']} failed={summary['failed']}")

    @app.cli.command("refresh-members")
    def refresh_members_command():
        """Rebuild the membership cache from the configured segments."""
        snapshot = asyncio.run(services.refresher.refresh_all_customers())
        click.echo(f"members={snapshot.members_found} errors={snapshot.errors}")

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5055"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
