"""
eventscore/routes/score_removal.py
Multi-signature removal of a judge's scores in a category
"""
from eventscore.orm.consensus import ConsensusKind
from eventscore.routes.consensus_requests import build_reversal_router

router = build_reversal_router(
    ConsensusKind.SCORE_REMOVAL,
    prefix="/score-removal",
    tag="Score Removal",
)
