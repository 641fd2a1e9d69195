"""
eventscore/routes/winners.py
Ranked results and winner sign-off
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.database import get_db
from eventscore.errors import success_response
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.winner_engine import WinnerComputationEngine, redact_for

router = APIRouter(prefix="/winners", tags=["Winners"])


class SignWinnersRequest(BaseModel):
    category_id: str = Field(..., min_length=1)


@router.get("/category/{category_id}")
async def get_category_winners(
    category_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await WinnerComputationEngine(db).get_winners_by_category(category_id, actor)
    result = redact_for(actor, result)
    message = "Winners retrieved" if not result["winners_withheld"] else "Winners pending sign-off"
    return success_response(result, message)


@router.get("/contest/{contest_id}")
async def get_contest_winners(
    contest_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await WinnerComputationEngine(db).get_winners_by_contest(contest_id, actor)
    return success_response(result, "Contest winners retrieved")


@router.get("/category/{category_id}/signature-status")
async def get_signature_status(
    category_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await WinnerComputationEngine(db).get_signature_status(category_id, actor)
    return success_response(result, "Signature status retrieved")


@router.post("/sign")
async def sign_winners(
    body: SignWinnersRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await WinnerComputationEngine(db).sign_winners(
        body.category_id,
        actor,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    message = "Winners already signed" if result["already_signed"] else "Winners signed successfully"
    return success_response(result, message)
