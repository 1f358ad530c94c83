"""Alert endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query

from riskwatch.auth import get_current_owner
from riskwatch.errors import AlertNotFound
from riskwatch.models.schemas import AlertOut
from riskwatch.services import alerts

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("", response_model=list[AlertOut])
async def get_alerts(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(get_current_owner),
):
    return await alerts.get_alerts(owner_id, unread_only=unread_only, limit=limit)


@router.post("/{alert_id}/read", response_model=AlertOut)
async def mark_alert_read(alert_id: int, owner_id: str = Depends(get_current_owner)):
    try:
        return await alerts.mark_alert_read(owner_id, alert_id)
    except AlertNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{alert_id}/dismiss", response_model=AlertOut)
async def dismiss_alert(alert_id: int, owner_id: str = Depends(get_current_owner)):
    try:
        return await alerts.dismiss_alert(owner_id, alert_id)
    except AlertNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
