"""
eventscore/orm/certification.py
Four-stage certification record for a category, contest or event.

Status flow: PENDING → IN_PROGRESS (judge) → IN_PROGRESS (tally, auditor)
→ CERTIFIED (board). REJECTED is reachable from any non-CERTIFIED state.
Flags become true strictly in order: judge → tally → auditor → board.
"""
import enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Text,
    UniqueConstraint, CheckConstraint, Index, Enum as SQLEnum
)

from eventscore.orm.base import BaseModel, iso


TOTAL_STEPS = 4


class CertificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    CERTIFIED = "CERTIFIED"
    REJECTED = "REJECTED"


class ScopeLevel(str, enum.Enum):
    CATEGORY = "CATEGORY"
    CONTEST = "CONTEST"
    EVENT = "EVENT"


def build_scope_key(
    level: ScopeLevel,
    event_id: str,
    contest_id: Optional[str] = None,
    category_id: Optional[str] = None
) -> str:
    """Deterministic key used to keep one certification per scope per tenant."""
    return f"{level.value}:{event_id}:{contest_id or '-'}:{category_id or '-'}"


class Certification(BaseModel):
    __tablename__ = "certifications"

    scope_level = Column(SQLEnum(ScopeLevel), nullable=False)
    scope_key = Column(String(160), nullable=False)

    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    contest_id = Column(String(36), ForeignKey("contests.id", ondelete="CASCADE"), nullable=True)
    category_id = Column(String(36), ForeignKey("categories.id", ondelete="CASCADE"), nullable=True)

    status = Column(SQLEnum(CertificationStatus), nullable=False, default=CertificationStatus.PENDING)
    current_step = Column(Integer, nullable=False, default=1)
    total_steps = Column(Integer, nullable=False, default=TOTAL_STEPS)

    # Stage flags
    judge_certified = Column(Boolean, nullable=False, default=False)
    tally_certified = Column(Boolean, nullable=False, default=False)
    auditor_certified = Column(Boolean, nullable=False, default=False)
    board_approved = Column(Boolean, nullable=False, default=False)
    organizer_certified = Column(Boolean, nullable=False, default=False)

    # Stage audit
    judge_certified_by = Column(String(36), nullable=True)
    judge_certified_at = Column(DateTime, nullable=True)
    tally_certified_by = Column(String(36), nullable=True)
    tally_certified_at = Column(DateTime, nullable=True)
    auditor_certified_by = Column(String(36), nullable=True)
    auditor_certified_at = Column(DateTime, nullable=True)
    organizer_certified_by = Column(String(36), nullable=True)
    organizer_certified_at = Column(DateTime, nullable=True)
    certified_by = Column(String(36), nullable=True)
    certified_at = Column(DateTime, nullable=True)

    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Bumped by every transition
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("tenant_id", "scope_key", name="uq_certification_tenant_scope"),
        CheckConstraint("current_step >= 1 AND current_step <= total_steps", name="ck_certification_step_range"),
        Index("idx_certifications_event", "event_id"),
        Index("idx_certifications_category", "category_id"),
        Index("idx_certifications_status", "status"),
    )

    @property
    def completed_stages(self) -> int:
        return sum(1 for flag in (
            self.judge_certified,
            self.tally_certified,
            self.auditor_certified,
            self.board_approved,
        ) if flag)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "scope_level": self.scope_level.value if self.scope_level else None,
            "event_id": self.event_id,
            "contest_id": self.contest_id,
            "category_id": self.category_id,
            "status": self.status.value if self.status else None,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "judge_certified": bool(self.judge_certified),
            "tally_certified": bool(self.tally_certified),
            "auditor_certified": bool(self.auditor_certified),
            "board_approved": bool(self.board_approved),
            "organizer_certified": bool(self.organizer_certified),
            "judge_certified_by": self.judge_certified_by,
            "judge_certified_at": iso(self.judge_certified_at),
            "tally_certified_by": self.tally_certified_by,
            "tally_certified_at": iso(self.tally_certified_at),
            "auditor_certified_by": self.auditor_certified_by,
            "auditor_certified_at": iso(self.auditor_certified_at),
            "organizer_certified_by": self.organizer_certified_by,
            "organizer_certified_at": iso(self.organizer_certified_at),
            "certified_by": self.certified_by,
            "certified_at": iso(self.certified_at),
            "rejected_by": self.rejected_by,
            "rejected_at": iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "version": self.version,
        }
