"""
Monthly word usage per user.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID


class WordUsage(Base):
    """Words generated by a user in one calendar month (`YYYY-MM`)."""

    __tablename__ = "user_usage"
    __table_args__ = (UniqueConstraint("user_id", "month", name="uq_user_usage_user_month"),)

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False, index=True)
    month = Column(String(7), nullable=False)
    words_generated = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="word_usage")
