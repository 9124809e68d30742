"""
Dead Letter Queue (DLQ) Model.

Stores payout cycles that failed after retries were exhausted.
"""

from sqlalchemy import Column, Integer, String, Text, JSON, Enum
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    PROCESSED = "PROCESSED"
    ARCHIVED = "ARCHIVED"  # Gave up


class DeadLetterQueue(Base):
    """
    Dead Letter Queue table.
    Captures escalated payout cycles.
    """
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    task_name = Column(String(100), nullable=False, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)  # Task arguments

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)
    retry_count = Column(Integer, default=0)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    last_retry_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<DLQ(id={self.id}, task='{self.task_name}', status='{self.status}')>"
