"""
eventscore/routes/certifications.py
Four-stage certification endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.config.settings import settings
from eventscore.database import get_db
from eventscore.errors import success_response
from eventscore.limiter import limiter
from eventscore.orm.certification import ScopeLevel
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.certification_state_machine import CertificationStateMachine

router = APIRouter(prefix="/certifications", tags=["Certifications"])


# =============================================================================
# Pydantic Models
# =============================================================================

class CreateCertificationRequest(BaseModel):
    level: str = Field(..., description="CATEGORY, CONTEST or EVENT")
    id: str = Field(..., min_length=1, description="Category, contest or event id")

    @field_validator('level')
    def validate_level(cls, v):
        value = v.strip().upper()
        valid = [level.value for level in ScopeLevel]
        if value not in valid:
            raise ValueError(f'Invalid level. Must be one of: {valid}')
        return value


class RejectCertificationRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the certification is rejected")


# =============================================================================
# Routes
# =============================================================================

@router.post("")
async def create_certification(
    body: CreateCertificationRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert, created = await CertificationStateMachine(db).create(ScopeLevel(body.level), body.id, actor)
    return success_response(
        {**cert.to_dict(), "created": created},
        "Certification created" if created else "Certification already exists"
    )


@router.get("/{event_id}/status")
async def get_overall_status(
    event_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    status = await CertificationStateMachine(db).get_overall_status(event_id, actor)
    return success_response(status, "Certification status retrieved")


@router.post("/{event_id}/certify-all")
@limiter.limit(settings.BULK_RATE_LIMIT)
async def certify_all(
    request: Request,
    event_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    summary = await CertificationStateMachine(db).certify_all(event_id, actor)
    return success_response(
        summary,
        f"Certified {summary['succeeded']} of {summary['total']} categories"
    )


@router.get("/{cert_id}")
async def get_certification(
    cert_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).get(cert_id, actor)
    return success_response(cert.to_dict(), "Certification retrieved")


@router.post("/{cert_id}/certify-judge")
async def certify_judge(
    cert_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).certify_judge(cert_id, actor)
    return success_response(cert.to_dict(), "Judge certification completed")


@router.post("/{cert_id}/certify-tally")
async def certify_tally(
    cert_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).certify_tally(cert_id, actor)
    return success_response(cert.to_dict(), "Tally master certification completed")


@router.post("/{cert_id}/certify-auditor")
async def certify_auditor(
    cert_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).certify_auditor(cert_id, actor)
    return success_response(cert.to_dict(), "Auditor certification completed")


@router.post("/{cert_id}/approve-board")
async def approve_board(
    cert_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).approve_board(cert_id, actor)
    return success_response(cert.to_dict(), "Board approval completed; certification finalized")


@router.post("/{cert_id}/certify-organizer")
async def certify_organizer(
    cert_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).certify_organizer(cert_id, actor)
    return success_response(cert.to_dict(), "Organizer certification completed")


@router.post("/{cert_id}/reject")
async def reject_certification(
    cert_id: str,
    body: RejectCertificationRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    cert = await CertificationStateMachine(db).reject(cert_id, body.reason, actor)
    return success_response(cert.to_dict(), "Certification rejected")
