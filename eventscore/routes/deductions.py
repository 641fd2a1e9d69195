"""
eventscore/routes/deductions.py
Deduction requests and their role-coverage approval chain
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.database import get_db
from eventscore.errors import success_response
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.deduction_service import DeductionService

router = APIRouter(prefix="/deductions", tags=["Deductions"])


class CreateDeductionRequest(BaseModel):
    category_id: str = Field(..., min_length=1)
    contestant_id: str = Field(..., min_length=1)
    amount: float = Field(..., description="Points to deduct; must be positive")
    reason: Optional[str] = None


class ApproveDeductionRequest(BaseModel):
    signature: Optional[str] = Field(None, description="Printed name of the approver")
    notes: Optional[str] = None


class RejectDeductionRequest(BaseModel):
    reason: Optional[str] = None


@router.post("")
async def create_deduction(
    body: CreateDeductionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await DeductionService(db).create_deduction(
        body.category_id, body.contestant_id, body.amount, body.reason, actor
    )
    return success_response(result, "Deduction request created")


@router.get("/pending")
async def get_pending_deductions(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    pending = await DeductionService(db).get_pending(actor)
    return success_response(pending, f"{len(pending)} pending deductions")


@router.get("/{request_id}/approval-status")
async def get_approval_status(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await DeductionService(db).get_approval_status(request_id, actor)
    return success_response(result, "Approval status retrieved")


@router.post("/{request_id}/approve")
async def approve_deduction(
    request_id: str,
    body: ApproveDeductionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await DeductionService(db).approve_deduction(request_id, actor, body.signature, body.notes)
    message = "Deduction fully approved and applied" if result["applied"] else "Deduction approved"
    return success_response(result, message)


@router.post("/{request_id}/reject")
async def reject_deduction(
    request_id: str,
    body: RejectDeductionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await DeductionService(db).reject_deduction(request_id, actor, body.reason)
    return success_response(result, "Deduction rejected")
