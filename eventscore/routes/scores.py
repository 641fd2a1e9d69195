"""
eventscore/routes/scores.py
Score entry and scoped score certification
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.database import get_db
from eventscore.errors import success_response
from eventscore.rbac import Actor, get_current_actor
from eventscore.services.score_ledger import ScoreLedger, ScoreScope

router = APIRouter(prefix="/scores", tags=["Scores"])


class RecordScoreRequest(BaseModel):
    category_id: str = Field(..., min_length=1)
    judge_id: str = Field(..., min_length=1)
    contestant_id: str = Field(..., min_length=1)
    score: float = Field(..., description="0 to the category's max score")


class CertifyScoresRequest(BaseModel):
    category_id: str = Field(..., min_length=1)
    judge_id: Optional[str] = Field(None, description="Narrow to one judge")
    contestant_id: Optional[str] = Field(None, description="Narrow to one contestant")


@router.post("")
async def record_score(
    body: RecordScoreRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    score = await ScoreLedger(db).record_score(
        body.category_id, body.judge_id, body.contestant_id, body.score, actor
    )
    await db.commit()
    return success_response(score.to_dict(), "Score recorded")


@router.post("/certify")
async def certify_scores(
    body: CertifyScoresRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    scope = ScoreScope(
        category_id=body.category_id,
        judge_id=body.judge_id,
        contestant_id=body.contestant_id,
    )
    count = await ScoreLedger(db).certify_scores(scope, actor)
    await db.commit()
    return success_response(
        {"scope": scope.to_dict(), "certified_count": count},
        f"Certified {count} scores"
    )
