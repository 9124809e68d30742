"""
Payout Batch database model.

The receipt-level record of one settled (or failed) payout.
"""

from sqlalchemy import Column, BigInteger, String, Enum
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now
from payout_backend.app.models.wallet_enums import PayoutBatchStatus, PayoutBatchOrigin


class PayoutBatch(Base):
    """
    Payout Batch model.

    Every group of debit_payout entries sharing a payout_batch_id has one
    batch row, written by the batch processor or backfilled after a
    manual payout. total_amount_minor is the net amount sent to the bank.
    """
    __tablename__ = "payout_batches"

    batch_id = Column(String(128), primary_key=True)

    # Payee
    vendor_id = Column(String(128), nullable=False, index=True)
    vendor_name = Column(String(255), nullable=True)

    # Financials
    total_amount_minor = Column(BigInteger, nullable=False)
    gross_amount_minor = Column(BigInteger, nullable=True)
    fee_minor = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), nullable=True)

    cycle_key = Column(String(32), nullable=True, index=True)
    status = Column(Enum(PayoutBatchStatus), default=PayoutBatchStatus.COMPLETED, nullable=False, index=True)
    origin = Column(Enum(PayoutBatchOrigin), default=PayoutBatchOrigin.AUTOMATED, nullable=False)
    transfer_code = Column(String(128), nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<PayoutBatch(batch_id='{self.batch_id}', status='{self.status.value}', amount={self.total_amount_minor})>"
