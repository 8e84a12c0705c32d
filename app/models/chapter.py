"""
Chapter model with its embedded scene outline.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID, JSONDocument


class ChapterWritingStatus:
    PENDING = "pending"
    GENERATING_OUTLINE = "generating_outline"
    OUTLINE_READY = "outline_ready"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class GenerationStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SceneStatus:
    PENDING = "pending"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"


class Chapter(Base):
    """Chapter model for book content."""

    __tablename__ = "chapters"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    project_id = Column(GUID(), ForeignKey("projects.id"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    summary = Column(Text)
    sort_order = Column(Integer, nullable=False, default=0)

    # Ordered list of scene descriptors (see schemas.writing.SceneOutline)
    scene_outline = Column(JSONDocument, default=list)
    scenes_completed = Column(Integer, nullable=False, default=0)
    word_count = Column(Integer, nullable=False, default=0)

    # Status tracking
    writing_status = Column(String(50), nullable=False, default=ChapterWritingStatus.PENDING)
    generation_status = Column(String(50), nullable=False, default=GenerationStatus.PENDING)
    writing_error = Column(Text)

    # Scene claim lease: set while a worker is generating one of this chapter's scenes
    claim_token = Column(String(64))
    claimed_at = Column(DateTime(timezone=True))
    revision = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    project = relationship("Project", back_populates="chapters")
    blocks = relationship(
        "ContentBlock",
        back_populates="chapter",
        cascade="all, delete-orphan",
        order_by="ContentBlock.sort_order",
    )

    @property
    def scenes(self) -> list[dict]:
        return list(self.scene_outline or [])

    @property
    def total_scenes(self) -> int:
        return len(self.scene_outline or [])
