"""
eventscore/routes/consensus_requests.py
Shared request / sign / execute / reject endpoints for reversal workflows
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.database import get_db
from eventscore.errors import ValidationError, success_response
from eventscore.orm.consensus import ConsensusKind, ConsensusStatus
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.consensus_service import ConsensusService, KIND_LABELS


# =============================================================================
# Pydantic Models
# =============================================================================

class CreateReversalRequest(BaseModel):
    category_id: Optional[str] = None
    judge_id: Optional[str] = None
    contestant_id: Optional[str] = Field(None, description="Score removal only: narrow to one contestant")
    reason: Optional[str] = None


class SignReversalRequest(BaseModel):
    signature_name: Optional[str] = Field(None, description="Printed name of the signer")
    role: Optional[str] = Field(None, description="Slot being signed; defaults to the caller's slot")
    notes: Optional[str] = None


class RejectReversalRequest(BaseModel):
    reason: Optional[str] = None


def parse_status(value: Optional[str]) -> Optional[ConsensusStatus]:
    if value is None or not value.strip():
        return None
    try:
        return ConsensusStatus(value.strip().upper())
    except ValueError:
        valid = [s.value for s in ConsensusStatus]
        raise ValidationError(f"Invalid status. Must be one of: {valid}", details={"status": value})


# =============================================================================
# Router factory
# =============================================================================

def build_reversal_router(kind: ConsensusKind, prefix: str, tag: str) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[tag])
    label = KIND_LABELS[kind]

    @router.post("/requests")
    async def create_request(
        body: CreateReversalRequest,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        request = await ConsensusService(db).create(
            kind, body.category_id, body.judge_id, body.reason, actor,
            contestant_id=body.contestant_id,
        )
        return success_response(ConsensusService.describe(request), f"{label} request created")

    @router.get("/requests")
    async def list_requests(
        status: Optional[str] = Query(None, description="PENDING, EXECUTED or REJECTED"),
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        requests = await ConsensusService(db).list(kind, actor, parse_status(status))
        return success_response(requests, f"{len(requests)} {label.lower()} requests")

    @router.get("/requests/{request_id}")
    async def get_request(
        request_id: str,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        return success_response(
            await ConsensusService(db).get(kind, request_id, actor),
            f"{label} request retrieved"
        )

    @router.post("/requests/{request_id}/sign")
    async def sign_request(
        request_id: str,
        body: SignReversalRequest,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        result = await ConsensusService(db).sign(
            kind, request_id, body.signature_name, actor, role=body.role, notes=body.notes
        )
        return success_response(result, "Request signed successfully")

    @router.post("/requests/{request_id}/execute")
    async def execute_request(
        request_id: str,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        result = await ConsensusService(db).execute(kind, request_id, actor)
        return success_response(
            result,
            f"{label} executed; {result['affected_count']} scores affected"
        )

    @router.post("/requests/{request_id}/reject")
    async def reject_request(
        request_id: str,
        body: RejectReversalRequest,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        result = await ConsensusService(db).reject(kind, request_id, body.reason, actor)
        return success_response(result, f"{label} request rejected")

    return router
