"""
eventscore/orm/winner_signature.py
Sign-off on releasing a category's winners. One row per (category, user).
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, UniqueConstraint, Index

from eventscore.orm.base import BaseModel, utcnow, iso


class WinnerSignature(BaseModel):
    __tablename__ = "winner_signatures"

    category_id = Column(String(36), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    role = Column(String(20), nullable=False)

    signature = Column(String(64), nullable=False)  # SHA256 hex
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    signed_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("category_id", "user_id", name="uq_winner_signature_category_user"),
        Index("idx_winner_signatures_category", "category_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "user_id": self.user_id,
            "role": self.role,
            "signature": self.signature,
            "signed_at": iso(self.signed_at),
        }
