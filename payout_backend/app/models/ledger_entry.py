"""
Ledger Entry database model.

Immutable, append-only wallet accounting records.
"""

from sqlalchemy import Column, Integer, BigInteger, ForeignKey, Enum, String, Index, text
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now
from payout_backend.app.models.wallet_enums import LedgerEntryType, LedgerSource


class LedgerEntry(Base):
    """
    Ledger Entry model.

    Immutable record of a wallet movement. Every state change (hold,
    promotion, payout, refund, split) is a new row that references the
    row it consumes; nothing is ever updated or deleted.

    Reference columns:
    - related_entry_id: the hold/credit this entry releases, pays or refunds
    - promoted_from_entry_id: the hold a credit_eligible was promoted from
    - split_from_entry_id: the credit a remainder credit was carried from
    """
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership
    vendor_id = Column(String(128), ForeignKey('vendor_accounts.vendor_id'), nullable=False, index=True)
    currency = Column(String(3), nullable=False)
    source = Column(Enum(LedgerSource), nullable=False, index=True)
    order_ref = Column(String(128), nullable=False)
    event_id = Column(String(128), nullable=True, index=True)

    # Financials
    entry_type = Column(Enum(LedgerEntryType), nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)
    note = Column(String(500), nullable=True)

    # Payout targeting
    target_payout_at = Column(UTCDateTime, nullable=False, index=True)
    target_payout_key = Column(String(32), nullable=False, index=True)
    payout_batch_id = Column(String(128), nullable=True, index=True)

    # Lot references
    related_entry_id = Column(Integer, ForeignKey('ledger_entries.id'), nullable=True, index=True)
    promoted_from_entry_id = Column(Integer, ForeignKey('ledger_entries.id'), nullable=True, index=True)
    split_from_entry_id = Column(Integer, ForeignKey('ledger_entries.id'), nullable=True, index=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False, index=True)
    created_by = Column(String(128), nullable=False, default="system")

    # A hold is released once and a credit lot is paid once
    __table_args__ = (
        Index('uq_ledger_release_per_hold', 'related_entry_id', unique=True,
              postgresql_where=text("entry_type = 'CREDIT_RELEASE'"),
              sqlite_where=text("entry_type = 'CREDIT_RELEASE'")),
        Index('uq_ledger_payout_per_lot', 'related_entry_id', unique=True,
              postgresql_where=text("entry_type = 'DEBIT_PAYOUT'"),
              sqlite_where=text("entry_type = 'DEBIT_PAYOUT'")),
    )

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, type='{self.entry_type.value}', amount={self.amount_minor})>"
