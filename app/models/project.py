"""
Project model for book projects.
"""

import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID, JSONDocument


class ProjectStatus(enum.Enum):
    """Project lifecycle status."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class WritingStatus(enum.Enum):
    """Status of the background writing pipeline for a project."""

    IDLE = "idle"
    QUEUED = "queued"
    GENERATING_OUTLINES = "generating_outlines"
    WRITING = "writing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    INCOMPLETE = "incomplete"


# A worker tick only does work while the project is in one of these
ACTIVE_WRITING_STATUSES = frozenset(
    {WritingStatus.QUEUED, WritingStatus.GENERATING_OUTLINES, WritingStatus.WRITING}
)


class Project(Base):
    """Project model for book projects."""

    __tablename__ = "projects"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    owner_id = Column(GUID(), ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(500), nullable=False)
    genre = Column(String(100), default="fiction")
    subgenre = Column(String(100))
    story_idea = Column(Text)
    target_audience = Column(String(100))  # adult, young_adult, children
    story_structure = Column(JSONDocument, default=dict)

    # Book metadata
    target_word_count = Column(Integer, default=50000)
    word_count = Column(Integer, nullable=False, default=0)

    # Lifecycle
    status = Column(
        Enum(ProjectStatus, values_callable=lambda obj: [e.value for e in obj]),
        default=ProjectStatus.ACTIVE,
    )

    # Writing pipeline state
    writing_status = Column(
        Enum(
            WritingStatus,
            name="writingstatus",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=WritingStatus.IDLE,
    )
    writing_error = Column(Text)
    writing_run_id = Column(GUID())  # New value on every start
    total_scenes = Column(Integer, nullable=False, default=0)
    completed_scenes = Column(Integer, nullable=False, default=0)
    failed_scenes = Column(Integer, nullable=False, default=0)
    writing_started_at = Column(DateTime(timezone=True))
    writing_completed_at = Column(DateTime(timezone=True))
    last_activity_at = Column(DateTime(timezone=True))

    # Bumped on every writing status transition (compare-and-swap)
    revision = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    owner = relationship("User", back_populates="projects")
    chapters = relationship(
        "Chapter",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Chapter.sort_order",
    )
    writing_jobs = relationship(
        "WritingJob", back_populates="project", cascade="all, delete-orphan"
    )
    notifications = relationship("Notification", back_populates="project")

    @property
    def is_writing_active(self) -> bool:
        return self.writing_status in ACTIVE_WRITING_STATUSES
