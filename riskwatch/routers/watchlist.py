"""Watchlist endpoints for monitored targets."""

from fastapi import APIRouter, Depends, HTTPException, Query

from riskwatch.auth import get_current_owner
from riskwatch.errors import ConcurrentWriteConflict, DuplicateTarget, InvalidTarget, TargetNotFound
from riskwatch.models.schemas import (
    CheckOut, SnapshotOut, WatchlistCreate, WatchlistCreated, WatchlistOut,
)
from riskwatch.services import scheduler, snapshots

router = APIRouter(prefix="/watchlist", tags=["watchlist"])


@router.post("", response_model=WatchlistCreated)
async def add_to_watchlist(data: WatchlistCreate, owner_id: str = Depends(get_current_owner)):
    """Start monitoring a phone number or profile."""
    try:
        target_id = await scheduler.add_to_watchlist(
            owner_id, data.target, frequency=data.check_frequency, label=data.label,
        )
    except DuplicateTarget as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidTarget as e:
        raise HTTPException(status_code=422, detail=str(e))
    return WatchlistCreated(watchlist_id=target_id)


@router.get("", response_model=list[WatchlistOut])
async def list_watchlist(owner_id: str = Depends(get_current_owner)):
    return await scheduler.list_watchlist(owner_id)


@router.delete("/{watchlist_id}")
async def remove_from_watchlist(watchlist_id: int, owner_id: str = Depends(get_current_owner)):
    try:
        await scheduler.remove_from_watchlist(owner_id, watchlist_id)
    except TargetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentWriteConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True}


@router.get("/{watchlist_id}/timeline", response_model=list[SnapshotOut])
async def get_timeline(
    watchlist_id: int,
    limit: int = Query(100, ge=1, le=500),
    owner_id: str = Depends(get_current_owner),
):
    """Historical snapshots, most recent first."""
    try:
        return await snapshots.get_timeline(owner_id, watchlist_id, limit=limit)
    except TargetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{watchlist_id}/check", response_model=CheckOut)
async def check_now(watchlist_id: int, owner_id: str = Depends(get_current_owner)):
    """Run a check immediately. Rejected while another check is in flight."""
    try:
        await scheduler.get_target(owner_id, watchlist_id)
        result = await scheduler.run_check(watchlist_id, trigger="manual")
    except TargetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentWriteConflict as e:
        raise HTTPException(status_code=409, detail=str(e))

    return CheckOut(
        target_id=result.target_id,
        status=result.status,
        snapshot=SnapshotOut.model_validate(result.snapshot) if result.snapshot else None,
        alerts_created=len(result.alerts),
        next_check_at=result.next_check_at,
        error=result.error,
    )
