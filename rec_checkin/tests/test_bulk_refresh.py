import pytest

from bulk_refresh import BulkRefreshEngine
from checkin_errors import NoSegmentsConfigured, PermissionDenied, RateLimited, RefreshInProgress
from commerce_client import CustomerRecord


@pytest.mark.asyncio
async def test_permission_error_is_not_retried(engine, commerce):
    commerce.always_fail["MEMBER_1"] = PermissionDenied("403 Forbidden")

    results = await engine.bulk_refresh(["MEMBER_1", "MEMBER_2"])

    denied, ok = results
    assert denied.customer_id == "MEMBER_1"
    assert denied.has_membership is False
    assert denied.error_type == "permission"
    assert denied.attempts == 1
    assert commerce.call_count("get_customer", "MEMBER_1") == 1
    assert ok.error is None
    assert ok.has_membership is True


@pytest.mark.asyncio
async def test_rate_limited_then_success_uses_exponential_backoff(engine, commerce, sleeper):
    commerce.scripted_failures["MEMBER_2"] = [RateLimited(), RateLimited()]

    [result] = await engine.bulk_refresh(["MEMBER_2"])

    assert result.error is None
    assert result.has_membership is True
    assert result.attempts == 3
    assert sleeper.delays == [0.1, 0.2]


@pytest.mark.asyncio
async def test_retries_exhausted_reports_last_error(engine, commerce):
    commerce.scripted_failures["MEMBER_2"] = [RateLimited(), RateLimited(), RateLimited()]

    [result] = await engine.bulk_refresh(["MEMBER_2"])

    assert result.error_type == "rate_limit"
    assert result.attempts == 3
    assert result.to_dict() == {
        "customer_id": "MEMBER_2",
        "has_membership": False,
        "error": "Rate limit exceeded",
        "error_type": "rate_limit",
    }


@pytest.mark.asyncio
async def test_unknown_customer_is_reported_as_other(engine):
    [result] = await engine.bulk_refresh(["NOBODY"])

    assert result.has_membership is False
    assert result.error is not None
    assert result.error_type == "other"


@pytest.mark.asyncio
async def test_batches_are_staggered_and_rate_limited(engine, sleeper):
    seen = []

    results = await engine.bulk_refresh(
        ["MEMBER_1", "MEMBER_2", "GUEST_1"], on_progress=lambda done, total: seen.append((done, total))
    )

    assert [r.customer_id for r in results] == ["MEMBER_1", "MEMBER_2", "GUEST_1"]
    assert [r.has_membership for r in results] == [True, True, False]
    # second request of the first batch is staggered, then one pause between batches
    assert sleeper.delays == [0.05, 0.5]
    assert seen == [(2, 3), (3, 3)]


@pytest.mark.asyncio
async def test_overrides_replace_configured_batch_options(engine, sleeper):
    await engine.bulk_refresh(["MEMBER_1", "MEMBER_2", "GUEST_1"], concurrency=1, rate_limit_ms=0)

    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_empty_input_makes_no_calls(engine, commerce):
    assert await engine.bulk_refresh([]) == []
    assert commerce.calls == []


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_abort(engine):
    def explode(done, total):
        raise RuntimeError("ui went away")

    results = await engine.bulk_refresh(["MEMBER_1", "GUEST_1"], on_progress=explode)

    assert all(r.error is None for r in results)


@pytest.mark.asyncio
async def test_bulk_refresh_does_not_mask_errors_with_stale_cache(engine, cache, commerce, clock):
    await cache.get_membership_status("MEMBER_1")
    clock.advance(days=2)
    commerce.offline = True

    [result] = await engine.bulk_refresh(["MEMBER_1"])

    assert result.error is not None
    assert result.error_type == "other"


@pytest.mark.asyncio
async def test_full_refresh_rebuilds_cache_from_segments(engine, cache, segments, progress):
    segments.add_segment("SEG_B", "Summer Pass", 2)
    await cache.get_membership_status("GUEST_1")
    calls = []

    snapshot = await engine.refresh_all_customers(on_progress=lambda done, total: calls.append(done))

    assert snapshot.in_progress is False
    assert snapshot.total == 2
    assert snapshot.processed == 2
    assert snapshot.members_found == 2
    assert snapshot.errors == 0
    assert snapshot.last_error is None
    assert calls == [2]
    assert cache.get_cached_entry("GUEST_1") is None
    assert cache.get_cached_entry("MEMBER_1").segment_ids == ["SEG_A"]
    assert cache.get_cached_entry("MEMBER_2").segment_ids == ["SEG_A", "SEG_B"]
    assert cache.get_cached_entry("MEMBER_2").reference_id == "LOT-22"
    assert progress.snapshot().finished_at is not None


@pytest.mark.asyncio
async def test_full_refresh_counts_member_failures(engine, cache, commerce):
    commerce.always_fail["MEMBER_2"] = PermissionDenied()

    snapshot = await engine.refresh_all_customers()

    assert snapshot.errors == 1
    assert snapshot.members_found == 2
    assert cache.get_cached_entry("MEMBER_1") is not None
    assert cache.get_cached_entry("MEMBER_2") is None


@pytest.mark.asyncio
async def test_full_refresh_requires_segments(engine, segments, progress):
    segments.delete_segment("SEG_A")

    with pytest.raises(NoSegmentsConfigured):
        await engine.refresh_all_customers()
    assert progress.in_progress is False


@pytest.mark.asyncio
async def test_enumeration_failure_keeps_cache_and_records_error(engine, cache, commerce, progress, monkeypatch):
    await cache.get_membership_status("GUEST_1")

    async def denied(segment_id):
        raise PermissionDenied("403 Forbidden")

    monkeypatch.setattr(commerce, "search_customers_by_segment", denied)

    with pytest.raises(PermissionDenied):
        await engine.refresh_all_customers()

    snapshot = progress.snapshot()
    assert snapshot.in_progress is False
    assert snapshot.last_error == "403 Forbidden"
    assert cache.get_cached_entry("GUEST_1") is not None


@pytest.mark.asyncio
async def test_only_one_full_refresh_per_process(engine, cache, commerce, segments, settings, progress, sleeper):
    other = BulkRefreshEngine(cache, commerce, segments, settings, progress, sleep=sleeper)
    progress.begin()

    with pytest.raises(RefreshInProgress):
        await engine.refresh_all_customers()
    with pytest.raises(RefreshInProgress):
        other.start_background_refresh()

    progress.finish()
    snapshot = await other.refresh_all_customers()
    assert snapshot.members_found == 2


def test_background_refresh_publishes_progress(engine, cache, progress):
    thread = engine.start_background_refresh()
    thread.join(timeout=10)

    snapshot = progress.snapshot()
    assert not thread.is_alive()
    assert snapshot.in_progress is False
    assert snapshot.processed == 2
    assert cache.get_cached_entry("MEMBER_1").has_membership is True


def test_progress_snapshot_is_a_copy(progress):
    progress.begin()
    snapshot = progress.snapshot()
    progress.update(processed=5)

    assert snapshot.processed == 0
    assert progress.snapshot().processed == 5
    assert snapshot.to_dict()["in_progress"] is True


@pytest.mark.asyncio
async def test_full_refresh_skips_duplicate_members_across_segments(engine, cache, segments, commerce):
    segments.add_segment("SEG_B", "Summer Pass", 2)
    commerce.customers["EXTRA"] = CustomerRecord(id="EXTRA", given_name="Ola", segment_ids=["SEG_B"])

    snapshot = await engine.refresh_all_customers()

    assert snapshot.total == 3
    assert commerce.call_count("get_customer", "MEMBER_2") == 1
    assert cache.get_cached_entry("EXTRA").segment_ids == ["SEG_B"]
