"""
eventscore/routes/admin.py
Administrative certification cleanup
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.config.feature_flags import feature_flags
from eventscore.config.settings import settings
from eventscore.database import get_db
from eventscore.errors import success_response
from eventscore.limiter import limiter
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.certification_reset_service import CertificationResetService

router = APIRouter(prefix="/admin", tags=["Admin"])


class ResetCertificationsRequest(BaseModel):
    category_id: Optional[str] = None
    contest_id: Optional[str] = None
    event_id: Optional[str] = None
    all: bool = False


def check_reset_enabled():
    if not feature_flags.FEATURE_ADMIN_RESET:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Certification reset is disabled"
        )


@router.post("/certifications/reset")
@limiter.limit(settings.BULK_RATE_LIMIT)
async def reset_certifications(
    request: Request,
    body: ResetCertificationsRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    check_reset_enabled()
    result = await CertificationResetService(db).reset(
        actor,
        category_id=body.category_id,
        contest_id=body.contest_id,
        event_id=body.event_id,
        reset_all=body.all,
    )
    return success_response(
        result,
        f"Deleted {result['certifications_deleted']} certifications and "
        f"{result['winner_signatures_deleted']} winner signatures"
    )
