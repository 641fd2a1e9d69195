from eventscore.orm.base import Base, BaseModel
from eventscore.orm.competition import Event, Contest, Category, Contestant, Judge
from eventscore.orm.score import Score
from eventscore.orm.certification import (
    Certification, CertificationStatus, ScopeLevel, TOTAL_STEPS, build_scope_key
)
from eventscore.orm.consensus import (
    ConsensusRequest, ConsensusSignature, ScoreDeduction,
    ConsensusKind, ConsensusStatus
)
from eventscore.orm.winner_signature import WinnerSignature

__all__ = [
    "Base",
    "BaseModel",
    "Event",
    "Contest",
    "Category",
    "Contestant",
    "Judge",
    "Score",
    "Certification",
    "CertificationStatus",
    "ScopeLevel",
    "TOTAL_STEPS",
    "build_scope_key",
    "ConsensusRequest",
    "ConsensusSignature",
    "ScoreDeduction",
    "ConsensusKind",
    "ConsensusStatus",
    "WinnerSignature",
]
