"""
Ledger Schemas.

Entries are created through a discriminated union on ``type``: each
variant carries exactly the fields its entry type needs and rejects
everything else at construction time.
"""

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from payout_backend.app.db.types import ensure_utc
from payout_backend.app.models.wallet_enums import LedgerEntryType, LedgerSource


class _LedgerEntryBase(BaseModel):
    """Fields shared by every ledger entry."""
    vendor_id: str = Field(..., min_length=1, max_length=128)
    currency: str = Field(..., pattern=r"^[A-Z]{3}$")
    source: LedgerSource
    order_ref: str = Field(..., min_length=1, max_length=128)
    event_id: Optional[str] = None
    amount_minor: int = Field(..., gt=0)
    note: Optional[str] = Field(None, max_length=500)
    target_payout_at: datetime
    target_payout_key: str = Field(..., min_length=1, max_length=32)
    created_by: str = "system"
    created_at: Optional[datetime] = None

    class Config:
        frozen = True
        extra = "forbid"

    @field_validator("vendor_id")
    @classmethod
    def vendor_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("vendor_id must not be blank")
        return v

    @field_validator("target_payout_at", "created_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


class DebitHoldEntry(_LedgerEntryBase):
    """Settled order earnings still inside the hold window."""
    type: Literal["debit_hold"] = "debit_hold"


class CreditReleaseEntry(_LedgerEntryBase):
    """Zeroes a hold when it is promoted to eligible."""
    type: Literal["credit_release"] = "credit_release"
    releases_entry_id: int


class CreditEligibleEntry(_LedgerEntryBase):
    """Payable funds. Promoted from a hold, carried from a split, or direct."""
    type: Literal["credit_eligible"] = "credit_eligible"
    promoted_from_entry_id: Optional[int] = None
    split_from_entry_id: Optional[int] = None

    @model_validator(mode="after")
    def single_provenance(self):
        if self.promoted_from_entry_id is not None and self.split_from_entry_id is not None:
            raise ValueError("credit cannot be both promoted and split")
        return self


class DebitPayoutEntry(_LedgerEntryBase):
    """Settlement of (part of) one credit lot."""
    type: Literal["debit_payout"] = "debit_payout"
    consumes_entry_id: int
    payout_batch_id: str = Field(..., min_length=1, max_length=128)


class DebitRefundEntry(_LedgerEntryBase):
    """Refund against a hold or a credit lot."""
    type: Literal["debit_refund"] = "debit_refund"
    refunds_entry_id: int


LedgerEntryCreate = Annotated[
    Union[DebitHoldEntry, CreditReleaseEntry, CreditEligibleEntry, DebitPayoutEntry, DebitRefundEntry],
    Field(discriminator="type"),
]

ledger_entry_adapter = TypeAdapter(LedgerEntryCreate)


class LedgerQuery(BaseModel):
    """Filters for ledger listing."""
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    source: Optional[LedgerSource] = None
    entry_type: Optional[LedgerEntryType] = None
    target_payout_key: Optional[str] = None
    limit: int = Field(50, ge=1, le=1000)


class LedgerEntryResponse(BaseModel):
    """Schema for displaying a ledger entry."""
    id: int
    vendor_id: str
    currency: str
    source: LedgerSource
    order_ref: str
    event_id: Optional[str]
    entry_type: LedgerEntryType
    amount_minor: int
    note: Optional[str]
    target_payout_at: datetime
    target_payout_key: str
    payout_batch_id: Optional[str]
    related_entry_id: Optional[int]
    promoted_from_entry_id: Optional[int]
    split_from_entry_id: Optional[int]
    created_at: datetime
    created_by: str

    class Config:
        from_attributes = True


class OrderSettledEvent(BaseModel):
    """Upstream event: an order was paid and its vendor share is known."""
    vendor_id: str = Field(..., min_length=1)
    currency: str = Field(..., pattern=r"^[A-Z]{3}$")
    source: LedgerSource
    order_id: str = Field(..., min_length=1)
    event_id: Optional[str] = None
    amount_minor: int = Field(..., gt=0)
    hold: bool = True
    settled_at: Optional[datetime] = None
    vendor_name: Optional[str] = None


class OrderRefundedEvent(BaseModel):
    """Upstream event: (part of) an order's vendor share was refunded."""
    vendor_id: str = Field(..., min_length=1)
    entry_id: int
    amount_minor: int = Field(..., gt=0)
    reason: Optional[str] = None


class EarningsBucket(BaseModel):
    eligible_minor: int = 0
    on_hold_minor: int = 0


class EarningsBySourceResponse(BaseModel):
    vendor_id: str
    event: EarningsBucket
    store: EarningsBucket


class LedgerEntryList(BaseModel):
    entries: List[LedgerEntryResponse]
