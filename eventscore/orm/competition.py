"""
eventscore/orm/competition.py
Competition structure: Event → Contest → Category, plus the people scored
(Contestant) and the people scoring (Judge).
"""
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, Boolean, ForeignKey, Numeric, Text,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from eventscore.orm.base import BaseModel, iso


class Event(BaseModel):
    """Top-level competition event"""
    __tablename__ = "events"

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    contests = relationship(
        "Contest",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Contest.created_at",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "created_at": iso(self.created_at),
        }


class Contest(BaseModel):
    """A contest within an event (e.g. 'Senior Vocal')"""
    __tablename__ = "contests"

    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)

    event = relationship("Event", back_populates="contests")
    categories = relationship(
        "Category",
        back_populates="contest",
        cascade="all, delete-orphan",
        order_by="Category.created_at",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
        }


class Category(BaseModel):
    """
    Scored category within a contest.
    max_score caps every individual judge score in the category.
    """
    __tablename__ = "categories"

    contest_id = Column(String(36), ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    max_score = Column(Numeric(7, 2), nullable=False, default=Decimal("100"))

    contest = relationship("Contest", back_populates="categories")

    __table_args__ = (
        CheckConstraint("max_score > 0", name="ck_category_max_score_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contest_id": self.contest_id,
            "name": self.name,
            "max_score": float(self.max_score) if self.max_score is not None else None,
        }


class Contestant(BaseModel):
    """Competitor registered for an event"""
    __tablename__ = "contestants"

    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    contestant_number = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "contestant_number", name="uq_contestant_event_number"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "contestant_number": self.contestant_number,
        }


class Judge(BaseModel):
    """
    Judge registered for an event.
    user_id links the judge to the identity carried in access tokens.
    """
    __tablename__ = "judges"

    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    is_head_judge = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_judges_tenant_user", "tenant_id", "user_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "user_id": self.user_id,
            "name": self.name,
            "is_head_judge": bool(self.is_head_judge),
        }
