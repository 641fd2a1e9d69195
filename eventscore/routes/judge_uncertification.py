"""
eventscore/routes/judge_uncertification.py
Multi-signature reversal of a judge's certified scores in a category
"""
from eventscore.orm.consensus import ConsensusKind
from eventscore.routes.consensus_requests import build_reversal_router

router = build_reversal_router(
    ConsensusKind.JUDGE_UNCERTIFICATION,
    prefix="/judge-uncertification",
    tag="Judge Uncertification",
)
