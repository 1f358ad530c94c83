"""Alert sink: append-only store of diff-triggered alerts."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from riskwatch.config import get_settings
from riskwatch.errors import AlertNotFound
from riskwatch.models.database import Alert, MonitoredTarget, Snapshot, get_session_factory, utcnow
from riskwatch.services.snapshots import DiffEvent

logger = logging.getLogger("riskwatch.alerts")


async def _dedup_cutoff(session: AsyncSession, target_id: int, checks: int) -> Optional[datetime]:
    """Capture time of the target's ``checks``-th previous snapshot."""
    result = await session.execute(
        select(Snapshot.captured_at)
        .where(Snapshot.target_id == target_id)
        .order_by(desc(Snapshot.captured_at), desc(Snapshot.id))
        .offset(checks)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _recent_signatures(session: AsyncSession, target_id: int, checks: int) -> set[tuple[str, str]]:
    cutoff = await _dedup_cutoff(session, target_id, checks)
    query = select(Alert.alert_type, Alert.severity).where(Alert.target_id == target_id)
    if cutoff is not None:
        query = query.where(Alert.created_at >= cutoff)
    result = await session.execute(query)
    return {(row[0], row[1]) for row in result.all()}


async def record_alerts(
    session: AsyncSession,
    target: MonitoredTarget,
    events: list[DiffEvent],
    now: Optional[datetime] = None,
) -> list[Alert]:
    """Insert one alert per diff event and bump the target's alerts_count.

    Runs inside the caller's transaction so the insert and the counter move
    together. With ``alert_dedup_checks`` = N > 0, an event whose type and
    severity already alerted since the target's N-th previous snapshot is
    suppressed.
    """
    if not events:
        return []

    settings = get_settings()
    suppressed: set[tuple[str, str]] = set()
    if settings.alert_dedup_checks > 0:
        suppressed = await _recent_signatures(session, target.id, settings.alert_dedup_checks)

    created = []
    for event in events:
        if (event.type, event.severity) in suppressed:
            logger.info(f"Suppressed repeat {event.type} alert for target {target.id}")
            continue
        alert = Alert(
            owner_id=target.owner_id,
            target_id=target.id,
            alert_type=event.type,
            severity=event.severity,
            title=event.title,
            details=event.details,
            old_value=event.old_value,
            new_value=event.new_value,
            read=False,
            dismissed=False,
            created_at=now or utcnow(),
        )
        session.add(alert)
        created.append(alert)

    target.alerts_count = (target.alerts_count or 0) + len(created)
    await session.flush()

    if created:
        logger.info(
            f"Target {target.id}: {len(created)} alert(s) "
            f"[{', '.join(a.alert_type for a in created)}]"
        )
    return created


async def get_alerts(owner_id: str, unread_only: bool = False, limit: int = 50) -> list[Alert]:
    """Most recent alerts for an owner."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        query = (
            select(Alert)
            .where(Alert.owner_id == owner_id)
            .order_by(desc(Alert.created_at), desc(Alert.id))
        )
        if unread_only:
            query = query.where(Alert.read == False)  # noqa: E712
        result = await session.execute(query.limit(limit))
        return list(result.scalars().all())


async def _set_flag(owner_id: str, alert_id: int, **values) -> Alert:
    session_factory = get_session_factory()
    async with session_factory() as session:
        async with session.begin():
            alert = await session.get(Alert, alert_id)
            if not alert or alert.owner_id != owner_id:
                raise AlertNotFound(alert_id)
            for name, value in values.items():
                setattr(alert, name, value)
        return alert


async def mark_alert_read(owner_id: str, alert_id: int) -> Alert:
    return await _set_flag(owner_id, alert_id, read=True)


async def dismiss_alert(owner_id: str, alert_id: int) -> Alert:
    """Dismiss without marking read; the two flags are independent."""
    return await _set_flag(owner_id, alert_id, dismissed=True)
