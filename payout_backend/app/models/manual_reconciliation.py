"""
Manual Reconciliation database model.

Commit record of a two-phase manual payout, keyed by its idempotency token.
"""

from sqlalchemy import Column, BigInteger, String, JSON
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now


class ManualReconciliation(Base):
    __tablename__ = "manual_reconciliations"

    idempotency_token = Column(String(128), primary_key=True)
    vendor_id = Column(String(128), nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)
    batch_id = Column(String(128), nullable=False)
    logs = Column(JSON, nullable=False)

    created_by = Column(String(128), nullable=False)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<ManualReconciliation(token='{self.idempotency_token}', batch_id='{self.batch_id}')>"
