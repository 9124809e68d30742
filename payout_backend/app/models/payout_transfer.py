"""
Payout Transfer database model.

Tracks one dispatch attempt per vendor cycle and locks the ledger
entries it covers while its outcome is unknown.
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, JSON, Enum, UniqueConstraint
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now
from payout_backend.app.models.wallet_enums import TransferStatus


class PayoutTransfer(Base):
    """
    Payout Transfer model.

    Written IN_FLIGHT before the provider is called, so a crash or a
    timeout leaves a record that a later resolution pass polls instead
    of dispatching a second transfer for the same cycle.
    """
    __tablename__ = "payout_transfers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Idempotency key: vendor + cycle
    vendor_id = Column(String(128), nullable=False, index=True)
    cycle_key = Column(String(32), nullable=False, index=True)
    attempt = Column(Integer, nullable=False, default=1)

    # Provider linkage (batch_id doubles as the provider reference)
    batch_id = Column(String(128), nullable=False, unique=True)
    transfer_ref = Column(String(128), nullable=True)

    status = Column(Enum(TransferStatus), default=TransferStatus.IN_FLIGHT, nullable=False, index=True)

    # Financials
    gross_amount_minor = Column(BigInteger, nullable=False)
    fee_minor = Column(BigInteger, nullable=False)
    net_amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)

    entry_ids = Column(JSON, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)
    resolved_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('vendor_id', 'cycle_key', 'attempt', name='uq_transfer_cycle_attempt'),
    )

    def __repr__(self):
        return f"<PayoutTransfer(batch_id='{self.batch_id}', status='{self.status.value}', net={self.net_amount_minor})>"
