"""Snapshot store and differ.

Each check appends a Snapshot. Comparing it with the one before yields
DiffEvents, which the alert sink turns into alerts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from riskwatch.errors import TargetNotFound
from riskwatch.models.database import MonitoredTarget, Snapshot, get_session_factory, utcnow
from riskwatch.services import verification

logger = logging.getLogger("riskwatch.snapshots")

SPIKE_RATIO = 1.2
DROP_RATIO = 0.8
TRUST_DROP_POINTS = 15

SEVERITY_BY_TYPE = {
    "bio_changed": "medium",
    "follower_spike": "high",
    "follower_drop": "medium",
    "trust_drop": "critical",
}


@dataclass(frozen=True)
class DiffEvent:
    type: str
    severity: str
    title: str
    details: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None


def _event(type_: str, title: str, details: str, old, new) -> DiffEvent:
    return DiffEvent(
        type=type_,
        severity=SEVERITY_BY_TYPE[type_],
        title=title,
        details=details,
        old_value=None if old is None else str(old),
        new_value=None if new is None else str(new),
    )


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fmt(value: float):
    return int(value) if float(value).is_integer() else value


# ─── DIFF ────────────────────────────────────────────────────────────────────

def diff(prev: Snapshot, curr: Snapshot) -> list[DiffEvent]:
    """Semantic changes between two consecutive snapshots of one target."""
    events = []
    prev_fields = prev.fields or {}
    curr_fields = curr.fields or {}

    old_bio, new_bio = prev_fields.get("bio"), curr_fields.get("bio")
    if old_bio and new_bio and old_bio != new_bio:
        events.append(_event("bio_changed", "Bio Changed", "Profile bio was updated", old_bio, new_bio))

    old_f = _number(prev_fields.get("follower_count"))
    new_f = _number(curr_fields.get("follower_count"))
    if old_f and new_f is not None:
        if new_f > old_f * SPIKE_RATIO:
            pct = round((new_f - old_f) / old_f * 100)
            events.append(_event(
                "follower_spike", "Suspicious Follower Spike",
                f"Followers increased from {_fmt(old_f)} to {_fmt(new_f)} (+{pct}%)",
                _fmt(old_f), _fmt(new_f),
            ))
        elif new_f < old_f * DROP_RATIO:
            pct = round((old_f - new_f) / old_f * 100)
            events.append(_event(
                "follower_drop", "Follower Drop Detected",
                f"Followers decreased from {_fmt(old_f)} to {_fmt(new_f)} (-{pct}%)",
                _fmt(old_f), _fmt(new_f),
            ))

    if prev.score is not None and curr.score is not None:
        drop = prev.score - curr.score
        if drop > TRUST_DROP_POINTS:
            events.append(_event(
                "trust_drop", "Trust Score Dropped",
                f"Trust Score decreased from {_fmt(prev.score)}% to {_fmt(curr.score)}% "
                f"(-{_fmt(drop)} points)",
                _fmt(prev.score), _fmt(curr.score),
            ))

    return events


# ─── STORE ───────────────────────────────────────────────────────────────────

async def capture(target_id: int, now: Optional[datetime] = None) -> Snapshot:
    """Observe a target and append a snapshot.

    No transaction is held while the collectors run.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        target = await session.get(MonitoredTarget, target_id)
        if not target:
            raise TargetNotFound(target_id)
        key, kind = target.target_key, target.kind

    observation = await verification.observe(key, kind, now=now)
    assessment = observation.assessment

    snapshot = Snapshot(
        target_id=target_id,
        captured_at=now or utcnow(),
        fields=observation.fields,
        score=assessment.trust_score,
        risk_score=assessment.score,
        level=assessment.level,
        flags=observation.flags,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(snapshot)
    logger.info(f"Captured snapshot for target {target_id}: trust {snapshot.score} ({snapshot.level})")
    return snapshot


async def previous_snapshot(session: AsyncSession, target_id: int, before: Snapshot) -> Optional[Snapshot]:
    """The snapshot captured immediately before ``before``."""
    result = await session.execute(
        select(Snapshot)
        .where(Snapshot.target_id == target_id, Snapshot.id != before.id)
        .where(
            (Snapshot.captured_at < before.captured_at)
            | ((Snapshot.captured_at == before.captured_at) & (Snapshot.id < before.id))
        )
        .order_by(desc(Snapshot.captured_at), desc(Snapshot.id))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_timeline(owner_id: str, target_id: int, limit: int = 100) -> list[Snapshot]:
    """Snapshots for a watchlist entry, most recent first."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        target = await session.get(MonitoredTarget, target_id)
        if not target or target.owner_id != owner_id:
            raise TargetNotFound(target_id)
        result = await session.execute(
            select(Snapshot)
            .where(Snapshot.target_id == target_id)
            .order_by(desc(Snapshot.captured_at), desc(Snapshot.id))
            .limit(limit)
        )
        return list(result.scalars().all())
