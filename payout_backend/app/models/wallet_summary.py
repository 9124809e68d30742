"""
Wallet Summary database model.

Incrementally maintained balance projection. Not authoritative: the
ledger is the source of truth and replay must always agree with it.
"""

from sqlalchemy import Column, BigInteger, String
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now


class WalletSummary(Base):
    __tablename__ = "wallet_summaries"

    vendor_id = Column(String(128), primary_key=True)
    currency = Column(String(3), nullable=True)

    eligible_balance_minor = Column(BigInteger, nullable=False, default=0)
    on_hold_minor = Column(BigInteger, nullable=False, default=0)

    last_payout_at = Column(UTCDateTime, nullable=True)
    last_updated_at = Column(UTCDateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return (
            f"<WalletSummary(vendor_id='{self.vendor_id}', "
            f"eligible={self.eligible_balance_minor}, on_hold={self.on_hold_minor})>"
        )
