"""Community scam report endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from riskwatch.auth import get_current_owner
from riskwatch.errors import InvalidTarget
from riskwatch.models.database import CommunityReport, ReportUpvote, get_db, utcnow
from riskwatch.models.schemas import ReportCreate, ReportOut
from riskwatch.services.collectors import normalize_target

router = APIRouter(prefix="/reports", tags=["reports"])

VERIFY_AFTER_UPVOTES = 5


@router.post("", response_model=ReportOut)
async def submit_report(
    data: ReportCreate,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Report a phone number or profile as a scam."""
    try:
        key, _, _ = normalize_target(data.target)
    except InvalidTarget as e:
        raise HTTPException(status_code=422, detail=str(e))

    report = CommunityReport(
        target_key=key,
        reported_by=owner_id,
        scam_type=data.scam_type,
        claimed_to_be_from=data.claimed_to_be_from,
        description=data.description,
        loss_amount=data.loss_amount,
        verified=False,
        upvotes=0,
        reported_at=utcnow(),
    )
    db.add(report)
    await db.flush()
    return report


@router.get("", response_model=list[ReportOut])
async def list_reports(
    key: str = Query(..., description="Phone number or profile URL"),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Recent reports for a number or profile."""
    try:
        target_key, _, _ = normalize_target(key)
    except InvalidTarget as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = await db.execute(
        select(CommunityReport)
        .where(CommunityReport.target_key == target_key)
        .order_by(desc(CommunityReport.reported_at), desc(CommunityReport.id))
        .limit(limit)
    )
    return result.scalars().all()


@router.post("/{report_id}/upvote", response_model=ReportOut)
async def upvote_report(
    report_id: int,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Confirm a report. Reports confirmed by five owners count as verified."""
    report = await db.get(CommunityReport, report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")

    existing = await db.execute(
        select(ReportUpvote.id).where(
            ReportUpvote.report_id == report_id, ReportUpvote.voter_id == owner_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail="Report already upvoted")

    db.add(ReportUpvote(report_id=report_id, voter_id=owner_id, created_at=utcnow()))
    report.upvotes = (report.upvotes or 0) + 1
    report.verified = report.upvotes >= VERIFY_AFTER_UPVOTES
    try:
        await db.flush()
    except IntegrityError:
        # a concurrent request from the same owner won the insert
        raise HTTPException(status_code=409, detail="Report already upvoted")
    return report
