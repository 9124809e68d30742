"""
Vendor Account database model.

Anchors a vendor's wallet: its established currency and display name.
"""

from sqlalchemy import Column, String
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now


class VendorAccount(Base):
    """
    Vendor Account model.

    Created implicitly on the vendor's first ledger entry. The currency of
    that entry becomes the vendor's only wallet currency.
    """
    __tablename__ = "vendor_accounts"

    vendor_id = Column(String(128), primary_key=True)
    display_name = Column(String(255), nullable=True)
    currency = Column(String(3), nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<VendorAccount(vendor_id='{self.vendor_id}', currency='{self.currency}')>"
