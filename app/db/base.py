"""
Database base configuration and session management.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


# Create database engine
engine = create_engine(
    settings.DATABASE_URL,
    echo=False,  # Set to True for SQL debugging
    **_engine_kwargs(settings.DATABASE_URL),
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create base class for models
Base = declarative_base()

# Import all models here to ensure they are registered with SQLAlchemy
from app.models.user import User  # noqa
from app.models.project import Project  # noqa
from app.models.chapter import Chapter  # noqa
from app.models.content_block import ContentBlock  # noqa
from app.models.writing_job import WritingJob  # noqa
from app.models.word_usage import WordUsage  # noqa
from app.models.credit_debit import CreditDebit  # noqa
from app.models.notification import Notification  # noqa
