"""
eventscore/orm/consensus.py
Multi-signature consensus requests.

One table serves three workflows:
- JUDGE_UNCERTIFICATION: reverse score certification for judge + category
- SCORE_REMOVAL: delete scores for judge + category (optionally one contestant)
- DEDUCTION: penalty against a contestant in a category

Reversals collect one signature per named role slot; deductions collect one
approval per user and evaluate role coverage.
"""
import enum

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Text, Numeric,
    UniqueConstraint, CheckConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from eventscore.orm.base import Base, BaseModel, new_id, utcnow, iso


class ConsensusKind(str, enum.Enum):
    JUDGE_UNCERTIFICATION = "JUDGE_UNCERTIFICATION"
    SCORE_REMOVAL = "SCORE_REMOVAL"
    DEDUCTION = "DEDUCTION"


class ConsensusStatus(str, enum.Enum):
    """PENDING → EXECUTED | APPROVED | REJECTED"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"


class ConsensusRequest(BaseModel):
    __tablename__ = "consensus_requests"

    kind = Column(SQLEnum(ConsensusKind), nullable=False)

    # Subject
    category_id = Column(String(36), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    judge_id = Column(String(36), ForeignKey("judges.id", ondelete="CASCADE"), nullable=True)
    contestant_id = Column(String(36), ForeignKey("contestants.id", ondelete="CASCADE"), nullable=True)
    amount = Column(Numeric(7, 2), nullable=True)
    reason = Column(Text, nullable=False)

    status = Column(SQLEnum(ConsensusStatus), nullable=False, default=ConsensusStatus.PENDING)

    requested_by = Column(String(36), nullable=False)
    requested_by_role = Column(String(20), nullable=False)
    requester_is_head_judge = Column(Boolean, nullable=False, default=False)

    # Set only while PENDING; the unique index blocks a second open request
    open_subject_key = Column(String(200), nullable=True)

    result_count = Column(Integer, nullable=True)
    executed_by = Column(String(36), nullable=True)
    executed_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    signatures = relationship(
        "ConsensusSignature",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ConsensusSignature.signed_at",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("open_subject_key", name="uq_consensus_open_subject"),
        CheckConstraint("amount IS NULL OR amount > 0", name="ck_consensus_amount_positive"),
        Index("idx_consensus_tenant_kind_status", "tenant_id", "kind", "status"),
        Index("idx_consensus_category", "category_id"),
    )

    def to_dict(self, include_signatures: bool = True) -> dict:
        result = {
            "id": self.id,
            "kind": self.kind.value if self.kind else None,
            "category_id": self.category_id,
            "judge_id": self.judge_id,
            "contestant_id": self.contestant_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "reason": self.reason,
            "status": self.status.value if self.status else None,
            "requested_by": self.requested_by,
            "requested_by_role": self.requested_by_role,
            "requester_is_head_judge": bool(self.requester_is_head_judge),
            "result_count": self.result_count,
            "executed_by": self.executed_by,
            "executed_at": iso(self.executed_at),
            "rejected_by": self.rejected_by,
            "rejected_at": iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "version": self.version,
            "created_at": iso(self.created_at),
        }
        if include_signatures:
            result["signatures"] = [s.to_dict() for s in self.signatures]
        return result


class ConsensusSignature(Base):
    """
    One filled slot on a consensus request.
    slot is the role name for reversals and the approving user id for deductions.
    """
    __tablename__ = "consensus_signatures"

    id = Column(String(36), primary_key=True, default=new_id)
    request_id = Column(String(36), ForeignKey("consensus_requests.id", ondelete="CASCADE"), nullable=False)
    slot = Column(String(64), nullable=False)

    role = Column(String(20), nullable=False)
    user_id = Column(String(36), nullable=False)
    signer_name = Column(String(200), nullable=False)
    is_head_judge = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    signed_at = Column(DateTime, nullable=False, default=utcnow)

    request = relationship("ConsensusRequest", back_populates="signatures")

    __table_args__ = (
        UniqueConstraint("request_id", "slot", name="uq_consensus_signature_slot"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slot": self.slot,
            "role": self.role,
            "user_id": self.user_id,
            "signer_name": self.signer_name,
            "is_head_judge": bool(self.is_head_judge),
            "notes": self.notes,
            "signed_at": iso(self.signed_at),
        }


class ScoreDeduction(BaseModel):
    """
    Applied deduction. Append-only; request_id is unique so an approved
    deduction is applied exactly once.
    """
    __tablename__ = "score_deductions"

    request_id = Column(String(36), ForeignKey("consensus_requests.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(String(36), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    contestant_id = Column(String(36), ForeignKey("contestants.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(7, 2), nullable=False)
    reason = Column(Text, nullable=False)
    applied_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("request_id", name="uq_score_deduction_request"),
        Index("idx_score_deductions_category", "category_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "category_id": self.category_id,
            "contestant_id": self.contestant_id,
            "amount": float(self.amount),
            "reason": self.reason,
            "applied_at": iso(self.applied_at),
        }
