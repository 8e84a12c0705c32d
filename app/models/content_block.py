"""
Content block model: one paragraph of generated prose.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID


class ContentBlock(Base):
    """Append-only prose block, ordered within its chapter."""

    __tablename__ = "blocks"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    chapter_id = Column(GUID(), ForeignKey("chapters.id"), nullable=False, index=True)
    block_type = Column(String(50), nullable=False, default="paragraph")
    content = Column(Text, nullable=False)
    sort_order = Column(Integer, nullable=False)
    scene_index = Column(Integer)  # Scene that produced this block

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    chapter = relationship("Chapter", back_populates="blocks")
