"""Monitoring scheduler: the watchlist, per-target checks and the check dispatcher.

Every target owns its next_check_at. A periodic tick enqueues the targets
that are due; a bounded pool of workers runs one check per target. A check
holds the target's lease for its whole duration, so a manual trigger and a
scheduled run can never write the same target at once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from riskwatch.config import get_settings
from riskwatch.errors import (
    CollectorUnavailable, ConcurrentWriteConflict, DuplicateTarget, TargetNotFound,
)
from riskwatch.models.database import Alert, MonitoredTarget, Snapshot, get_session_factory, utcnow
from riskwatch.services import alerts, snapshots, store
from riskwatch.services.collectors import normalize_target
from riskwatch.services.scoring import KNOWN_SCAM

logger = logging.getLogger("riskwatch.scheduler")

FREQUENCY_INTERVALS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(hours=24),
    "weekly": timedelta(days=7),
}
DEFAULT_INTERVAL = timedelta(hours=24)


def interval_for(frequency: str) -> timedelta:
    return FREQUENCY_INTERVALS.get(frequency, DEFAULT_INTERVAL)


def next_interval(target: MonitoredTarget, status: str) -> timedelta:
    """Interval until the next check, after applying the configured policies."""
    settings = get_settings()
    interval = interval_for(target.check_frequency)

    if status == "alerting" and settings.alerting_cadence == "accelerated":
        return min(interval, FREQUENCY_INTERVALS["hourly"])

    if status == "error" and settings.error_backoff_enabled:
        failures = max(target.consecutive_failures or 1, 1)
        factor = min(2 ** (failures - 1), settings.error_backoff_max_factor)
        return interval * factor

    return interval


def _advance(target: MonitoredTarget, status: str, now: datetime) -> None:
    """Reschedule from the latest check time.

    A run that finishes with an older ``now`` than the last recorded check
    is measured from that check instead, so the schedule never rewinds.
    The interval itself (including an accelerated alerting cadence) always
    replaces the stored next_check_at.
    """
    checked_at = now
    if target.last_checked_at is not None and target.last_checked_at > now:
        checked_at = target.last_checked_at
    target.status = status
    target.last_checked_at = checked_at
    target.next_check_at = checked_at + next_interval(target, status)


def _target_resource(target_id: int) -> str:
    return f"target:{target_id}"


# ─── WATCHLIST ───────────────────────────────────────────────────────────────

async def add_to_watchlist(
    owner_id: str,
    target: str,
    frequency: str = "daily",
    label: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Start monitoring a phone number or profile. Returns the watchlist id."""
    key, kind, platform = normalize_target(target)
    now = now or utcnow()
    session_factory = get_session_factory()

    async with session_factory() as session:
        existing = await session.execute(
            select(MonitoredTarget.id).where(
                MonitoredTarget.owner_id == owner_id,
                MonitoredTarget.target_key == key,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateTarget(key)

        entry = MonitoredTarget(
            owner_id=owner_id,
            target_key=key,
            kind=kind,
            platform=platform,
            label=label or "",
            check_frequency=frequency,
            next_check_at=now + interval_for(frequency),
            status="active",
            alerts_count=0,
            consecutive_failures=0,
            added_at=now,
        )
        session.add(entry)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise DuplicateTarget(key)
        target_id = entry.id

    logger.info(f"Watching {key} ({kind}, {frequency}) for {owner_id} as #{target_id}")

    if get_settings().capture_on_add and dispatcher.running:
        dispatcher.enqueue(target_id, trigger="initial")
    return target_id


async def list_watchlist(owner_id: str) -> list[MonitoredTarget]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        result = await session.execute(
            select(MonitoredTarget)
            .where(MonitoredTarget.owner_id == owner_id)
            .order_by(MonitoredTarget.added_at, MonitoredTarget.id)
        )
        return list(result.scalars().all())


async def get_target(owner_id: str, target_id: int) -> MonitoredTarget:
    session_factory = get_session_factory()
    async with session_factory() as session:
        target = await session.get(MonitoredTarget, target_id)
        if not target or target.owner_id != owner_id:
            raise TargetNotFound(target_id)
        return target


async def remove_from_watchlist(owner_id: str, target_id: int) -> None:
    """Delete a watchlist entry with its snapshots and alerts."""
    await get_target(owner_id, target_id)

    resource = _target_resource(target_id)
    token = await store.acquire_lease(resource)
    try:
        session_factory = get_session_factory()
        async with session_factory() as session:
            async with session.begin():
                target = await session.get(MonitoredTarget, target_id)
                if not target:
                    raise TargetNotFound(target_id)
                await session.delete(target)
    finally:
        await store.release_lease(resource, token)
    logger.info(f"Removed watchlist entry #{target_id} for {owner_id}")


# ─── CHECKS ──────────────────────────────────────────────────────────────────

@dataclass
class CheckResult:
    target_id: int
    status: str
    snapshot: Optional[Snapshot] = None
    alerts: list[Alert] = field(default_factory=list)
    next_check_at: Optional[datetime] = None
    error: Optional[str] = None


async def _record_failure(target_id: int, error: Exception, now: datetime) -> Optional[datetime]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        async with session.begin():
            target = await session.get(MonitoredTarget, target_id)
            if not target:
                return None
            target.consecutive_failures = (target.consecutive_failures or 0) + 1
            target.last_error = str(error)[:500]
            _advance(target, "error", now)
            return target.next_check_at


async def run_check(target_id: int, trigger: str = "scheduled", now: Optional[datetime] = None) -> CheckResult:
    """Re-check one target: capture, diff, alert, reschedule.

    Raises ConcurrentWriteConflict if another run holds the target's lease.
    A collector failure leaves the target in ``error`` with its schedule
    advanced by the normal interval.
    """
    resource = _target_resource(target_id)
    token = await store.acquire_lease(resource)
    now = now or utcnow()
    logger.info(f"Check #{target_id} starting ({trigger})")

    try:
        try:
            snapshot = await snapshots.capture(target_id, now=now)
        except CollectorUnavailable as e:
            next_at = await _record_failure(target_id, e, now)
            logger.error(f"Check #{target_id} failed: {e}")
            return CheckResult(target_id, "error", next_check_at=next_at, error=str(e))
        except TargetNotFound:
            raise
        except Exception as e:
            await _record_failure(target_id, e, now)
            logger.error(f"Check #{target_id} crashed: {e}")
            raise

        session_factory = get_session_factory()
        async with session_factory() as session:
            async with session.begin():
                target = await session.get(MonitoredTarget, target_id)
                if not target:
                    raise TargetNotFound(target_id)

                prev = await snapshots.previous_snapshot(session, target_id, snapshot)
                events = snapshots.diff(prev, snapshot) if prev else []
                created = await alerts.record_alerts(session, target, events, now=now)

                status = "alerting" if snapshot.level == KNOWN_SCAM else "active"
                _advance(target, status, now)
                target.current_score = snapshot.score
                if target.baseline_score is None:
                    target.baseline_score = snapshot.score
                target.consecutive_failures = 0
                target.last_error = ""
                next_at = target.next_check_at

        logger.info(
            f"Check #{target_id} done: {status}, trust {snapshot.score}, "
            f"{len(created)} alert(s), next at {next_at:%Y-%m-%d %H:%M:%S}"
        )
        return CheckResult(target_id, status, snapshot=snapshot, alerts=created, next_check_at=next_at)
    finally:
        await store.release_lease(resource, token)


# ─── DISPATCH ────────────────────────────────────────────────────────────────

class CheckDispatcher:
    """Task queue feeding a bounded pool of check workers."""

    def __init__(self, workers: Optional[int] = None):
        self.workers = workers
        self._queue: Optional[asyncio.Queue] = None
        self._pending: set[int] = set()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        count = self.workers or get_settings().check_workers
        self._queue = asyncio.Queue()
        self._pending.clear()
        self._tasks = [asyncio.create_task(self._worker(n)) for n in range(count)]
        logger.info(f"Check dispatcher started with {count} workers")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        self._pending.clear()
        logger.info("Check dispatcher stopped")

    def enqueue(self, target_id: int, trigger: str = "scheduled") -> bool:
        """Queue a check unless one is already queued or running for the target."""
        if self._queue is None:
            raise RuntimeError("Check dispatcher is not running")
        if target_id in self._pending:
            return False
        self._pending.add(target_id)
        self._queue.put_nowait((target_id, trigger))
        return True

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            target_id, trigger = await self._queue.get()
            try:
                await run_check(target_id, trigger=trigger)
            except ConcurrentWriteConflict:
                logger.info(f"Worker {n}: target #{target_id} already being checked, skipped")
            except TargetNotFound:
                logger.info(f"Worker {n}: target #{target_id} was removed, skipped")
            except Exception as e:
                logger.error(f"Worker {n}: check #{target_id} failed: {e}")
            finally:
                self._pending.discard(target_id)
                self._queue.task_done()


dispatcher = CheckDispatcher()


async def dispatch_due_checks(queue: CheckDispatcher, now: Optional[datetime] = None) -> int:
    """Enqueue every target whose next check is due. Returns how many were queued."""
    now = now or utcnow()
    purged = await store.purge_expired(now)
    if purged:
        logger.debug(f"Evicted {purged} expired keyed entries")

    session_factory = get_session_factory()
    async with session_factory() as session:
        result = await session.execute(
            select(MonitoredTarget.id)
            .where(MonitoredTarget.next_check_at <= now)
            .order_by(MonitoredTarget.next_check_at)
        )
        due = [row[0] for row in result.all()]

    queued = sum(1 for target_id in due if queue.enqueue(target_id))
    if queued:
        logger.info(f"Dispatched {queued} due check(s)")
    return queued
