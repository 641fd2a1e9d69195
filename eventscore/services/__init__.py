from eventscore.services.score_ledger import ScoreLedger, ScoreScope
from eventscore.services.certification_state_machine import CertificationStateMachine
from eventscore.services.consensus_service import ConsensusService
from eventscore.services.deduction_service import DeductionService
from eventscore.services.progress_tracker import CertificationProgressTracker, ProgressScope, ProgressLevel
from eventscore.services.winner_engine import WinnerComputationEngine
from eventscore.services.certification_reset_service import CertificationResetService

__all__ = [
    "ScoreLedger",
    "ScoreScope",
    "CertificationStateMachine",
    "ConsensusService",
    "DeductionService",
    "CertificationProgressTracker",
    "ProgressScope",
    "ProgressLevel",
    "WinnerComputationEngine",
    "CertificationResetService",
]
