"""
Payout Schedule database model.

Per-vendor payout cadence. Fee percent and cap are derived from the tier.
"""

from sqlalchemy import Column, Integer, String, Enum
from payout_backend.app.db.session import Base
from payout_backend.app.db.types import UTCDateTime, utc_now
from payout_backend.app.models.wallet_enums import PayoutTier


class PayoutSchedule(Base):
    """
    Payout Schedule model.

    Weekdays use Python's convention (Monday=0 ... Sunday=6). A null
    weekday means "every business day".
    """
    __tablename__ = "payout_schedules"

    vendor_id = Column(String(128), primary_key=True)
    tier = Column(Enum(PayoutTier), nullable=False, default=PayoutTier.WEEKLY)
    timezone = Column(String(64), nullable=False)

    cutoff_weekday = Column(Integer, nullable=True)
    cutoff_hour = Column(Integer, nullable=False)
    payout_weekday = Column(Integer, nullable=True)
    payout_hour = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<PayoutSchedule(vendor_id='{self.vendor_id}', tier='{self.tier.value}')>"
