"""
Writing job model: a queued scene created by recovery.
"""

import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID, JSONDocument


class JobStatus(enum.Enum):
    """Status of a writing job."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(enum.Enum):
    WRITE_SCENE = "write_scene"


RECOVERY_JOB_PRIORITY = 5


class WritingJob(Base):
    """A single scene the worker should (re)write before regular scanning."""

    __tablename__ = "writing_jobs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    project_id = Column(GUID(), ForeignKey("projects.id"), nullable=False, index=True)
    chapter_id = Column(GUID(), ForeignKey("chapters.id"), nullable=False)

    job_type = Column(
        Enum(JobType, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=JobType.WRITE_SCENE,
    )
    scene_index = Column(Integer, nullable=False)
    scene_outline = Column(JSONDocument)  # Descriptor snapshot at enqueue time

    status = Column(
        Enum(JobStatus, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    priority = Column(Integer, nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)

    # Execution tracking
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    locked_by = Column(String(64))
    locked_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    project = relationship("Project", back_populates="writing_jobs")
    chapter = relationship("Chapter")
