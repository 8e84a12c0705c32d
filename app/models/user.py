"""
User profile model.

Identity is owned by the external auth provider; this row carries the
profile fields the writing pipeline needs (word credits, admin flag).
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.config import settings
from app.db.base import Base
from app.db.types import GUID

UNLIMITED_WORDS = -1


class User(Base):
    """User profile with word credit settings."""

    __tablename__ = "users"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255))

    # Word credits: monthly allowance (-1 = unlimited) plus rollover/purchased words
    monthly_word_limit = Column(Integer, nullable=False, default=settings.DEFAULT_MONTHLY_WORD_LIMIT)
    extra_words_balance = Column(Integer, nullable=False, default=0)

    # Status fields
    is_active = Column(Boolean, default=True)
    is_superuser = Column(Boolean, default=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    projects = relationship(
        "Project", back_populates="owner", cascade="all, delete-orphan"
    )
    word_usage = relationship(
        "WordUsage", back_populates="user", cascade="all, delete-orphan"
    )
    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def has_unlimited_words(self) -> bool:
        return self.monthly_word_limit == UNLIMITED_WORDS
