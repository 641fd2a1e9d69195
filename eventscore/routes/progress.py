"""
eventscore/routes/progress.py
Certification progress for dashboards
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.database import get_db
from eventscore.errors import ValidationError, success_response
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.progress_tracker import (
    CertificationProgressTracker, ProgressLevel, ProgressScope
)

router = APIRouter(prefix="/progress", tags=["Progress"])


@router.get("/{level}/{target_id}")
async def get_progress(
    level: str,
    target_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    try:
        progress_level = ProgressLevel(level.strip().upper())
    except ValueError:
        valid = [lvl.value.lower() for lvl in ProgressLevel]
        raise ValidationError(f"Invalid level. Must be one of: {valid}", details={"level": level})

    progress = await CertificationProgressTracker(db).get_progress(
        ProgressScope(level=progress_level, id=target_id), actor
    )
    return success_response(progress, "Progress retrieved")
