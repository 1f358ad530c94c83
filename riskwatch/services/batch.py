"""Batch jobs: score a submitted list of entities one at a time.

Items are processed strictly sequentially so a single job never hammers
the evidence collectors. Progress is written after every item, a failing
item only costs its own row, and cancellation is checked between items.
"""

import logging
import time
import uuid
from typing import Optional

from sqlalchemy import select, update, desc

from riskwatch.config import get_settings
from riskwatch.errors import BatchRejected, ItemScanFailed, JobNotFound
from riskwatch.models.database import BatchJob, get_session_factory, utcnow
from riskwatch.services import verification
from riskwatch.services.collectors import detect_kind, detect_platform, normalize_target
from riskwatch.services.scoring import HIGH_RISK, KNOWN_SCAM, SAFE, SUSPICIOUS

logger = logging.getLogger("riskwatch.batch")

ERROR_LEVEL = "error"
RISK_ORDER = {KNOWN_SCAM: 0, HIGH_RISK: 1, SUSPICIOUS: 2, SAFE: 3, ERROR_LEVEL: 4}
TERMINAL_STATUSES = {"completed", "canceled"}


def _new_job_id() -> str:
    return f"bulk_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


async def _load_job(session, job_id: str, owner_id: Optional[str] = None) -> BatchJob:
    result = await session.execute(select(BatchJob).where(BatchJob.job_id == job_id))
    job = result.scalar_one_or_none()
    if not job or (owner_id is not None and job.owner_id != owner_id):
        raise JobNotFound(job_id)
    return job


# ─── SUBMISSION ──────────────────────────────────────────────────────────────

async def create_job(
    owner_id: str,
    items: list[str],
    file_name: Optional[str] = None,
    source: str = "manual_paste",
) -> str:
    """Persist a pending job and return its public id.

    The caller schedules ``run_batch_job`` to do the work.
    """
    settings = get_settings()
    items = [i.strip() for i in items if i and i.strip()]
    if not items:
        raise BatchRejected("A batch needs at least one item")
    if len(items) > settings.batch_max_items:
        raise BatchRejected(f"A batch can hold at most {settings.batch_max_items} items")

    job_id = _new_job_id()
    session_factory = get_session_factory()
    async with session_factory() as session:
        async with session.begin():
            session.add(BatchJob(
                job_id=job_id,
                owner_id=owner_id,
                status="pending",
                items=items,
                total_count=len(items),
                processed_count=0,
                success_count=0,
                failure_count=0,
                results=[],
                file_name=file_name,
                source=source or "manual_paste",
                created_at=utcnow(),
            ))
    logger.info(f"Batch {job_id}: {len(items)} items queued for {owner_id}")
    return job_id


# ─── PROCESSING ──────────────────────────────────────────────────────────────

async def scan_item(value: str) -> dict:
    """Score one batch entry. Any failure surfaces as ItemScanFailed."""
    try:
        key, kind, platform = normalize_target(value)
        observation = await verification.observe(key, kind)
    except Exception as e:
        raise ItemScanFailed(value, str(e) or type(e).__name__) from e

    assessment = observation.assessment
    return {
        "input": value,
        "key": key,
        "kind": kind,
        "platform": platform,
        "score": assessment.score,
        "level": assessment.level,
        "flags": list(assessment.reasons),
        "scanned_at": utcnow().isoformat(),
    }


def _error_row(value: str, error: Exception) -> dict:
    kind = detect_kind(value)
    return {
        "input": value,
        "key": None,
        "kind": kind,
        "platform": detect_platform(value) if kind == "profile" else "phone",
        "score": None,
        "level": ERROR_LEVEL,
        "flags": [],
        "error": getattr(error, "reason", None) or str(error) or "Failed to scan",
        "scanned_at": utcnow().isoformat(),
    }


async def _current_status(job_id: str) -> Optional[str]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        result = await session.execute(select(BatchJob.status).where(BatchJob.job_id == job_id))
        return result.scalar_one_or_none()


async def run_batch_job(job_id: str) -> None:
    """Process a pending job to completion (or until it is canceled)."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        async with session.begin():
            job = await _load_job(session, job_id)
            if job.status != "pending":
                logger.info(f"Batch {job_id}: status {job.status}, not starting")
                return
            job.status = "processing"
            job.started_at = utcnow()
            items = list(job.items or [])

    results: list[dict] = []
    success_count = failure_count = 0
    total_seconds = 0.0
    canceled = False

    for index, item in enumerate(items):
        if await _current_status(job_id) == "canceled":
            canceled = True
            logger.info(f"Batch {job_id}: canceled after {index}/{len(items)} items")
            break

        started = time.monotonic()
        try:
            row = await scan_item(item)
            success_count += 1
        except Exception as e:
            logger.error(f"Batch {job_id}: item {index + 1} failed: {e}")
            row = _error_row(item, e)
            failure_count += 1
        total_seconds += time.monotonic() - started
        results.append(row)

        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(BatchJob)
                    .where(BatchJob.job_id == job_id)
                    .values(
                        processed_count=index + 1,
                        success_count=success_count,
                        failure_count=failure_count,
                        results=list(results),
                        avg_item_seconds=total_seconds / (index + 1),
                    )
                )

    if canceled:
        return

    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(BatchJob)
                .where(BatchJob.job_id == job_id, BatchJob.status == "processing")
                .values(status="completed", completed_at=utcnow())
            )
    logger.info(
        f"Batch {job_id} complete: {success_count} scored, {failure_count} failed"
    )


async def cancel_job(owner_id: str, job_id: str) -> BatchJob:
    """Request cancellation. The worker stops before its next item."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        async with session.begin():
            job = await _load_job(session, job_id, owner_id)
            if job.status not in TERMINAL_STATUSES:
                job.status = "canceled"
                job.completed_at = utcnow()
                logger.info(f"Batch {job_id}: cancel requested")
        return job


# ─── QUERIES ─────────────────────────────────────────────────────────────────

def progress_percent(job: BatchJob) -> int:
    if not job.total_count:
        return 100
    return round(job.processed_count / job.total_count * 100)


def eta_seconds(job: BatchJob) -> int:
    if job.status != "processing":
        return 0
    per_item = job.avg_item_seconds or get_settings().batch_item_estimate_seconds
    return round((job.total_count - job.processed_count) * per_item)


async def get_status(owner_id: str, job_id: str) -> dict:
    session_factory = get_session_factory()
    async with session_factory() as session:
        job = await _load_job(session, job_id, owner_id)
        return {
            "job_id": job.job_id,
            "status": job.status,
            "total_count": job.total_count,
            "processed_count": job.processed_count,
            "success_count": job.success_count,
            "failure_count": job.failure_count,
            "progress": progress_percent(job),
            "eta_seconds": eta_seconds(job),
            "created_at": job.created_at,
            "completed_at": job.completed_at,
        }


def sort_results(results: list[dict], sort_by: Optional[str]) -> list[dict]:
    if sort_by == "score":
        # Highest risk first, unscored rows last
        return sorted(results, key=lambda r: (r.get("score") is None, -(r.get("score") or 0)))
    if sort_by == "risk_level":
        return sorted(results, key=lambda r: RISK_ORDER.get(r.get("level"), len(RISK_ORDER)))
    return list(results)


def result_stats(results: list[dict], total: int) -> dict:
    stats = {"total": total}
    for level in RISK_ORDER:
        stats[level] = sum(1 for r in results if r.get("level") == level)
    scores = [r["score"] for r in results if r.get("score") is not None]
    stats["average_score"] = round(sum(scores) / len(scores), 1) if scores else None
    return stats


async def get_results(
    owner_id: str,
    job_id: str,
    sort_by: Optional[str] = None,
    filter_risk: Optional[str] = None,
) -> dict:
    """Ranked results with per-level counts over the filtered set."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        job = await _load_job(session, job_id, owner_id)

    results = list(job.results or [])
    if filter_risk:
        results = [r for r in results if r.get("level") == filter_risk]
    results = sort_results(results, sort_by)

    return {
        "job_id": job.job_id,
        "status": job.status,
        "file_name": job.file_name,
        "results": results,
        "stats": result_stats(results, job.total_count),
        "created_at": job.created_at,
        "completed_at": job.completed_at,
    }


async def list_jobs(owner_id: str, limit: int = 20) -> list[BatchJob]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        result = await session.execute(
            select(BatchJob)
            .where(BatchJob.owner_id == owner_id)
            .order_by(desc(BatchJob.created_at), desc(BatchJob.id))
            .limit(limit)
        )
        return list(result.scalars().all())
