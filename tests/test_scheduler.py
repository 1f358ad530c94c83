"""Tests for the watchlist, per-target checks and the check dispatcher."""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from riskwatch.config import get_settings
from riskwatch.errors import (
    CollectorUnavailable, ConcurrentWriteConflict, DuplicateTarget, InvalidTarget, TargetNotFound,
)
from riskwatch.models.database import Alert, Snapshot, utcnow
from riskwatch.services import scheduler, store, verification
from riskwatch.services.scheduler import CheckDispatcher, dispatch_due_checks
from riskwatch.services.scoring import aggregate
from tests.conftest import evidence_for_risk

T0 = datetime(2026, 3, 1, 9, 0, 0)
DAY = timedelta(milliseconds=86_400_000)


async def _count(session_factory, model, target_id):
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(model).where(model.target_id == target_id)
        )
        return result.scalar_one()


# ─── WATCHLIST ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_add_schedules_first_check_one_interval_out(db):
    target_id = await scheduler.add_to_watchlist("owner-1", "0412 345 678", frequency="daily", now=T0)
    target = await scheduler.get_target("owner-1", target_id)

    assert target.target_key == "+61412345678"
    assert target.kind == "phone"
    assert target.status == "active"
    assert target.alerts_count == 0
    assert target.next_check_at == T0 + DAY


@pytest.mark.asyncio
@pytest.mark.parametrize("frequency,interval", [
    ("hourly", timedelta(hours=1)),
    ("weekly", timedelta(days=7)),
])
async def test_frequency_sets_interval(db, frequency, interval):
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", frequency=frequency, now=T0)
    assert (await scheduler.get_target("owner-1", target_id)).next_check_at == T0 + interval


@pytest.mark.asyncio
async def test_duplicate_key_per_owner(db):
    await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    with pytest.raises(DuplicateTarget):
        await scheduler.add_to_watchlist("owner-1", "0412 345 678", now=T0)

    # another owner may watch the same number
    await scheduler.add_to_watchlist("owner-2", "+61412345678", now=T0)
    assert len(await scheduler.list_watchlist("owner-1")) == 1
    assert len(await scheduler.list_watchlist("owner-2")) == 1


@pytest.mark.asyncio
async def test_invalid_target_is_rejected(db):
    with pytest.raises(InvalidTarget):
        await scheduler.add_to_watchlist("owner-1", "call me maybe", now=T0)


@pytest.mark.asyncio
async def test_get_target_scoped_to_owner(db):
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    with pytest.raises(TargetNotFound):
        await scheduler.get_target("owner-2", target_id)


# ─── CHECKS ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_successful_check(db, fake_observe):
    fake_observe(({}, 10))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)
    checked_at = T0 + timedelta(hours=3)

    result = await scheduler.run_check(target_id, trigger="manual", now=checked_at)
    target = await scheduler.get_target("owner-1", target_id)

    assert result.status == "active"
    assert result.snapshot.score == 90
    assert target.baseline_score == 90
    assert target.current_score == 90
    assert target.last_checked_at == checked_at
    assert target.next_check_at == checked_at + DAY
    assert await _count(db, Snapshot, target_id) == 1


@pytest.mark.asyncio
async def test_baseline_keeps_first_score(db, fake_observe):
    fake_observe(({}, 10), ({}, 25))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    await scheduler.run_check(target_id, now=T0 + DAY)
    await scheduler.run_check(target_id, now=T0 + 2 * DAY)
    target = await scheduler.get_target("owner-1", target_id)

    assert target.baseline_score == 90
    assert target.current_score == 75


@pytest.mark.asyncio
async def test_known_scam_sets_alerting_with_unchanged_cadence(db, fake_observe):
    fake_observe(({}, 80))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    result = await scheduler.run_check(target_id, now=T0 + DAY)

    assert result.status == "alerting"
    assert result.next_check_at == T0 + 2 * DAY


@pytest.mark.asyncio
async def test_accelerated_cadence_for_alerting_targets(db, fake_observe, monkeypatch):
    monkeypatch.setenv("ALERTING_CADENCE", "accelerated")
    get_settings.cache_clear()
    fake_observe(({}, 80), ({}, 10))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", frequency="weekly", now=T0)

    alerting = await scheduler.run_check(target_id, now=T0 + DAY)
    recovered = await scheduler.run_check(target_id, now=T0 + DAY + timedelta(hours=1))

    assert alerting.next_check_at == T0 + DAY + timedelta(hours=1)
    assert recovered.status == "active"
    assert recovered.next_check_at == T0 + DAY + timedelta(hours=1) + timedelta(days=7)


@pytest.mark.asyncio
async def test_collector_failure_marks_error_and_keeps_schedule(db, fake_observe):
    fake_observe(CollectorUnavailable("all", "no collector answered"))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    result = await scheduler.run_check(target_id, now=T0 + DAY)
    target = await scheduler.get_target("owner-1", target_id)

    assert result.status == "error"
    assert result.snapshot is None
    assert target.status == "error"
    assert target.consecutive_failures == 1
    assert "no collector answered" in target.last_error
    assert target.next_check_at == T0 + 2 * DAY
    assert await _count(db, Snapshot, target_id) == 0


@pytest.mark.asyncio
async def test_error_backoff_doubles_interval(db, fake_observe, monkeypatch):
    monkeypatch.setenv("ERROR_BACKOFF_ENABLED", "true")
    get_settings.cache_clear()
    fake_observe(CollectorUnavailable("all", "down"))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    first = await scheduler.run_check(target_id, now=T0 + DAY)
    second = await scheduler.run_check(target_id, now=T0 + 2 * DAY)

    assert first.next_check_at == T0 + 2 * DAY
    assert second.next_check_at == T0 + 4 * DAY


@pytest.mark.asyncio
async def test_recovery_resets_failures(db, fake_observe):
    fake_observe(CollectorUnavailable("all", "down"), ({}, 10))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    await scheduler.run_check(target_id, now=T0 + DAY)
    result = await scheduler.run_check(target_id, now=T0 + 2 * DAY)
    target = await scheduler.get_target("owner-1", target_id)

    assert result.status == "active"
    assert target.consecutive_failures == 0
    assert target.last_error == ""


@pytest.mark.asyncio
async def test_next_check_never_moves_backwards(db, fake_observe):
    fake_observe(({}, 10))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    await scheduler.run_check(target_id, now=T0 + 10 * DAY)
    result = await scheduler.run_check(target_id, now=T0 + DAY)

    assert result.next_check_at == T0 + 11 * DAY
    assert result.last_checked_at == T0 + 10 * DAY


@pytest.mark.asyncio
async def test_accelerated_cadence_measured_from_latest_check(db, fake_observe, monkeypatch):
    monkeypatch.setenv("ALERTING_CADENCE", "accelerated")
    get_settings.cache_clear()
    fake_observe(({}, 80), ({}, 80))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", frequency="weekly", now=T0)

    await scheduler.run_check(target_id, now=T0 + 3 * DAY)
    stale = await scheduler.run_check(target_id, now=T0 + DAY)

    assert stale.status == "alerting"
    assert stale.next_check_at == T0 + 3 * DAY + timedelta(hours=1)


@pytest.mark.asyncio
async def test_check_of_unknown_target(db, fake_observe):
    with pytest.raises(TargetNotFound):
        await scheduler.run_check(4242, now=T0)


@pytest.mark.asyncio
async def test_concurrent_checks_on_one_target(db, monkeypatch):
    release = asyncio.Event()
    calls = []

    async def blocking_observe(key, kind, force_refresh=False, now=None):
        calls.append(key)
        await release.wait()
        assessment = aggregate(evidence_for_risk(10), key=key, kind=kind, now=now)
        return verification.Observation(fields={}, assessment=assessment)

    monkeypatch.setattr(verification, "observe", blocking_observe)
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    scheduled = asyncio.create_task(scheduler.run_check(target_id, now=T0 + DAY))
    while not calls:
        await asyncio.sleep(0.01)

    with pytest.raises(ConcurrentWriteConflict):
        await scheduler.run_check(target_id, trigger="manual", now=T0 + DAY)

    release.set()
    result = await scheduled

    assert result.status == "active"
    assert len(calls) == 1
    assert await _count(db, Snapshot, target_id) == 1

    # the lease is released once the first run finishes
    again = await scheduler.run_check(target_id, trigger="manual", now=T0 + 2 * DAY)
    assert again.status == "active"


@pytest.mark.asyncio
async def test_remove_deletes_history(db, fake_observe):
    fake_observe(({}, 0), ({}, 50))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)
    await scheduler.run_check(target_id, now=T0 + DAY)
    await scheduler.run_check(target_id, now=T0 + 2 * DAY)
    assert await _count(db, Alert, target_id) == 1

    await scheduler.remove_from_watchlist("owner-1", target_id)

    with pytest.raises(TargetNotFound):
        await scheduler.get_target("owner-1", target_id)
    assert await _count(db, Snapshot, target_id) == 0
    assert await _count(db, Alert, target_id) == 0


@pytest.mark.asyncio
async def test_remove_is_scoped_and_respects_lease(db):
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)

    with pytest.raises(TargetNotFound):
        await scheduler.remove_from_watchlist("owner-2", target_id)

    token = await store.acquire_lease(f"target:{target_id}")
    with pytest.raises(ConcurrentWriteConflict):
        await scheduler.remove_from_watchlist("owner-1", target_id)

    await store.release_lease(f"target:{target_id}", token)
    await scheduler.remove_from_watchlist("owner-1", target_id)


# ─── DISPATCH ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatcher_deduplicates_queued_targets(db, fake_observe):
    calls = fake_observe(({}, 10))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)
    queue = CheckDispatcher(workers=2)
    await queue.start()
    try:
        assert queue.enqueue(target_id) is True
        assert queue.enqueue(target_id) is False
        await queue.join()
    finally:
        await queue.stop()

    assert calls == ["+61412345678"]
    assert queue.running is False


def test_enqueue_requires_running_dispatcher():
    with pytest.raises(RuntimeError):
        CheckDispatcher().enqueue(1)


@pytest.mark.asyncio
async def test_dispatch_due_checks_only_queues_due_targets(db, fake_observe):
    calls = fake_observe(({}, 10))
    hourly = await scheduler.add_to_watchlist("owner-1", "+61412345678", frequency="hourly", now=T0)
    await scheduler.add_to_watchlist("owner-1", "+61412345679", frequency="weekly", now=T0)
    queue = CheckDispatcher(workers=2)
    await queue.start()
    try:
        queued = await dispatch_due_checks(queue, now=T0 + timedelta(hours=2))
        await queue.join()
    finally:
        await queue.stop()

    assert queued == 1
    assert calls == ["+61412345678"]
    target = await scheduler.get_target("owner-1", hourly)
    assert target.last_checked_at is not None


@pytest.mark.asyncio
async def test_dispatch_purges_expired_entries(db):
    await store.put("reputation:+61412345678", {"fraud_score": 1}, ttl_seconds=1)
    queue = CheckDispatcher(workers=1)
    await queue.start()
    try:
        await dispatch_due_checks(queue, now=utcnow() + timedelta(hours=1))
    finally:
        await queue.stop()

    assert await store.get("reputation:+61412345678") is None


@pytest.mark.asyncio
async def test_worker_survives_failing_checks(db, fake_observe):
    fake_observe(RuntimeError("collector crashed"), ({}, 10))
    target_id = await scheduler.add_to_watchlist("owner-1", "+61412345678", now=T0)
    queue = CheckDispatcher(workers=1)
    await queue.start()
    try:
        queue.enqueue(target_id)
        await queue.join()
        queue.enqueue(target_id)
        await queue.join()
    finally:
        await queue.stop()

    target = await scheduler.get_target("owner-1", target_id)
    assert target.status == "active"
    assert target.consecutive_failures == 0
