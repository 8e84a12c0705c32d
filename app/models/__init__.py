"""
Database models for InkStory.
"""

from app.db.base import Base
from app.models.chapter import Chapter, ChapterWritingStatus, GenerationStatus, SceneStatus
from app.models.content_block import ContentBlock
from app.models.credit_debit import CreditDebit
from app.models.notification import Notification, NotificationChannel, NotificationType
from app.models.project import (
    ACTIVE_WRITING_STATUSES,
    Project,
    ProjectStatus,
    WritingStatus,
)
from app.models.user import UNLIMITED_WORDS, User
from app.models.word_usage import WordUsage
from app.models.writing_job import RECOVERY_JOB_PRIORITY, JobStatus, JobType, WritingJob

__all__ = [
    "Base",
    "User",
    "UNLIMITED_WORDS",
    "Project",
    "ProjectStatus",
    "WritingStatus",
    "ACTIVE_WRITING_STATUSES",
    "Chapter",
    "ChapterWritingStatus",
    "GenerationStatus",
    "SceneStatus",
    "ContentBlock",
    "WritingJob",
    "JobStatus",
    "JobType",
    "RECOVERY_JOB_PRIORITY",
    "WordUsage",
    "CreditDebit",
    "Notification",
    "NotificationType",
    "NotificationChannel",
]
