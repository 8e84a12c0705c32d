"""
Notification model for user notifications.
"""

import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID


class NotificationType(enum.Enum):
    """Types of notifications."""

    BOOK_COMPLETED = "book_completed"


class NotificationChannel(enum.Enum):
    """Notification delivery channels."""

    IN_APP = "in_app"
    EMAIL = "email"


class Notification(Base):
    """Notification model for user alerts."""

    __tablename__ = "notifications"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    project_id = Column(GUID(), ForeignKey("projects.id"))

    notification_type = Column(Enum(NotificationType), nullable=False)
    channel = Column(Enum(NotificationChannel), nullable=False)

    # Notification content
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON)  # Recipient and project details for the delivery task

    # One notification per project writing run
    dedupe_key = Column(String(255), unique=True, nullable=False)

    # Delivery tracking
    is_sent = Column(Boolean, default=False)
    external_id = Column(String(255))  # Email provider message ID
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    sent_at = Column(DateTime(timezone=True))

    # Relationships
    user = relationship("User", back_populates="notifications")
    project = relationship("Project", back_populates="notifications")
