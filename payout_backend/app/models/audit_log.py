"""
Audit Log Database Model.

Tracks admin actions and money-moving operations for compliance review.
"""

from sqlalchemy import Column, Integer, String, JSON
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now


class AuditLog(Base):
    """
    Audit log model for tracking payout operations and admin actions.

    Events logged:
    - PAYOUT_SCHEDULE_CHANGED
    - BANK_ACCOUNT_UPDATED / BANK_ACCOUNT_VERIFIED
    - PAYOUT_SETTLED / PAYOUT_FAILED / PAYOUT_AMBIGUOUS
    - MANUAL_PAYOUT_RECONCILED / PAYOUT_BATCH_BACKFILLED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action ("system" for worker-driven actions)
    actor = Column(String(128), index=True, nullable=False, default="system")

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Whose wallet was affected
    vendor_id = Column(String(128), index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(UTCDateTime, default=utc_now, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor}, vendor={self.vendor_id})>"
