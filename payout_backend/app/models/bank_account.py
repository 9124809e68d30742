"""
Bank Account database model.

Destination of a vendor's payouts.
"""

from sqlalchemy import Column, Boolean, String
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now


class BankAccount(Base):
    """
    Bank Account model.

    Dispatch is blocked while is_verified is False. Changing the account
    details clears verification.
    """
    __tablename__ = "bank_accounts"

    vendor_id = Column(String(128), primary_key=True)

    bank_name = Column(String(255), nullable=False)
    account_number = Column(String(32), nullable=False)
    account_name = Column(String(255), nullable=False)
    bank_code = Column(String(32), nullable=False)

    is_verified = Column(Boolean, default=False, nullable=False)
    verified_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<BankAccount(vendor_id='{self.vendor_id}', verified={self.is_verified})>"
