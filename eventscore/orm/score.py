"""
eventscore/orm/score.py
Individual judge score for a contestant in a category.

Once is_certified is set the row is immutable for normal scoring paths; it
can only be uncertified (or removed) by executing a consensus request.
"""
from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Numeric,
    UniqueConstraint, CheckConstraint, Index
)

from eventscore.orm.base import BaseModel, iso


class Score(BaseModel):
    __tablename__ = "scores"

    category_id = Column(String(36), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    judge_id = Column(String(36), ForeignKey("judges.id", ondelete="CASCADE"), nullable=False)
    contestant_id = Column(String(36), ForeignKey("contestants.id", ondelete="CASCADE"), nullable=False)

    score = Column(Numeric(7, 2), nullable=False)

    is_certified = Column(Boolean, nullable=False, default=False)
    certified_at = Column(DateTime, nullable=True)
    certified_by = Column(String(36), nullable=True)
    is_locked = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("category_id", "judge_id", "contestant_id", name="uq_score_category_judge_contestant"),
        CheckConstraint("score >= 0", name="ck_score_non_negative"),
        Index("idx_scores_category_certified", "category_id", "is_certified"),
        Index("idx_scores_judge", "judge_id"),
        Index("idx_scores_contestant", "contestant_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "judge_id": self.judge_id,
            "contestant_id": self.contestant_id,
            "score": float(self.score) if self.score is not None else None,
            "is_certified": bool(self.is_certified),
            "certified_at": iso(self.certified_at),
            "certified_by": self.certified_by,
            "is_locked": bool(self.is_locked),
        }
