"""
Credit debit audit model.

Records every word debit and how it was split between the monthly
allowance and the extra balance.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import GUID


class CreditDebit(Base):
    """A single word debit."""

    __tablename__ = "credit_debits"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False, index=True)
    project_id = Column(GUID(), ForeignKey("projects.id"))

    words = Column(Integer, nullable=False)
    from_monthly = Column(Integer, nullable=False, default=0)
    from_extra = Column(Integer, nullable=False, default=0)
    month = Column(String(7), nullable=False)

    # Same scene write can never be debited twice
    idempotency_key = Column(String(255), unique=True, nullable=False)
    description = Column(String(500))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
