"""Batch endpoints for bulk scans and their ranked results."""

from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from riskwatch.auth import get_current_owner
from riskwatch.errors import BatchRejected, JobNotFound
from riskwatch.models.schemas import (
    BatchCreate, BatchCreated, BatchResultsOut, BatchStatusOut, BatchSummaryOut,
)
from riskwatch.services import batch

router = APIRouter(prefix="/batch", tags=["batch"])


@router.post("", response_model=BatchCreated)
async def create_batch_job(
    data: BatchCreate,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_current_owner),
):
    """Queue a list of phone numbers and/or profile URLs for scoring.

    Processing runs in the background; poll the status endpoint for progress.
    """
    try:
        job_id = await batch.create_job(
            owner_id, data.items, file_name=data.file_name, source=data.source,
        )
    except BatchRejected as e:
        raise HTTPException(status_code=422, detail=str(e))

    background_tasks.add_task(batch.run_batch_job, job_id)
    return BatchCreated(job_id=job_id)


@router.get("", response_model=list[BatchSummaryOut])
async def list_batch_jobs(
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_current_owner),
):
    return await batch.list_jobs(owner_id, limit=limit)


@router.get("/{job_id}", response_model=BatchStatusOut)
async def get_batch_status(job_id: str, owner_id: str = Depends(get_current_owner)):
    try:
        return await batch.get_status(owner_id, job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{job_id}/results", response_model=BatchResultsOut)
async def get_batch_results(
    job_id: str,
    sort_by: Optional[Literal["score", "risk_level"]] = Query(None),
    filter_risk: Optional[
        Literal["known_scam", "high_risk", "suspicious", "safe", "error"]
    ] = Query(None),
    owner_id: str = Depends(get_current_owner),
):
    try:
        return await batch.get_results(owner_id, job_id, sort_by=sort_by, filter_risk=filter_risk)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{job_id}/cancel", response_model=BatchStatusOut)
async def cancel_batch_job(job_id: str, owner_id: str = Depends(get_current_owner)):
    try:
        await batch.cancel_job(owner_id, job_id)
        return await batch.get_status(owner_id, job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
