"""One-off risk check for a phone number."""

from fastapi import APIRouter, Depends, HTTPException

from riskwatch.auth import get_current_owner
from riskwatch.errors import InvalidTarget
from riskwatch.models.schemas import RiskAssessmentOut, VerifyRequest
from riskwatch.services.verification import verify_number

router = APIRouter(prefix="/verify", tags=["verify"])


@router.post("", response_model=RiskAssessmentOut)
async def verify(data: VerifyRequest, owner_id: str = Depends(get_current_owner)):
    """Combine community, reputation, geographic and behavioral evidence for a number."""
    try:
        assessment = await verify_number(
            data.identifier,
            contact_name=data.contact_name,
            force_refresh=data.force_refresh,
        )
    except InvalidTarget as e:
        raise HTTPException(status_code=422, detail=str(e))
    return RiskAssessmentOut(**assessment.to_dict())
