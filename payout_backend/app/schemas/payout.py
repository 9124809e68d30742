"""
Payout Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from payout_backend.app.models.wallet_enums import (
    PayoutTier, PayoutBatchStatus, PayoutBatchOrigin, TransferStatus, TransferOutcome
)


class PayoutScheduleConfig(BaseModel):
    """A vendor's active payout cadence with its tier pricing."""
    vendor_id: str
    tier: PayoutTier
    label: str
    fee_percent: Decimal
    fee_cap_minor: int
    timeline_days: int
    timezone: str
    cutoff_weekday: Optional[int]
    cutoff_hour: int
    payout_weekday: Optional[int]
    payout_hour: int


class PayoutScheduleUpdate(BaseModel):
    tier: PayoutTier


class FeeQuote(BaseModel):
    """Fee preview for an amount under a tier."""
    tier: PayoutTier
    gross_amount_minor: int
    fee_minor: int
    net_amount_minor: int
    fee_percent: Decimal
    fee_cap_minor: int


class BankAccountDetails(BaseModel):
    """Schema for registering a payout bank account."""
    bank_name: str = Field(..., min_length=1, max_length=255)
    account_number: str = Field(..., pattern=r"^\d{6,20}$")
    account_name: str = Field(..., min_length=1, max_length=255)
    bank_code: str = Field(..., min_length=1, max_length=32)


class BankAccountResponse(BankAccountDetails):
    vendor_id: str
    is_verified: bool
    verified_at: Optional[datetime]

    class Config:
        from_attributes = True


class WalletSummaryResponse(BaseModel):
    """Fresh wallet projection for one vendor."""
    vendor_id: str
    currency: Optional[str]
    eligible_balance_minor: int
    on_hold_minor: int
    next_payout_at: Optional[datetime]
    last_payout_at: Optional[datetime]
    last_updated_at: Optional[datetime]
    schedule: PayoutScheduleConfig
    bank: Optional[BankAccountResponse]


class PayoutBatchResponse(BaseModel):
    """Schema for displaying payout batches."""
    batch_id: str
    vendor_id: str
    vendor_name: Optional[str]
    total_amount_minor: int
    gross_amount_minor: Optional[int]
    fee_minor: int
    currency: Optional[str]
    cycle_key: Optional[str]
    status: PayoutBatchStatus
    origin: PayoutBatchOrigin
    transfer_code: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UpcomingTransaction(BaseModel):
    id: int
    created_at: datetime
    target_payout_at: datetime
    amount_minor: int
    event_id: Optional[str]
    order_id: str


class EventBreakdown(BaseModel):
    event_id: str
    amount_minor: int


class UpcomingPayoutResponse(BaseModel):
    vendor_id: str
    currency: Optional[str]
    next_payout_at: datetime
    total_amount_minor: int
    future_amount_minor: int
    wallet_balance_minor: int
    eligible_count: int
    future_count: int
    breakdown: List[EventBreakdown]
    transactions: List[UpcomingTransaction]
    future_transactions: List[UpcomingTransaction]


class ConsistencyReport(BaseModel):
    """Diagnostic comparing the wallet projection with the ledger."""
    vendor_id: str
    next_cycle_total_minor: int
    future_cycle_total_minor: int
    wallet_balance_minor: int
    diff_minor: int
    # Stored balance minus ledger total; positive when the wallet overstates
    drift_minor: int
    replayed_eligible_minor: int
    replayed_on_hold_minor: int
    projected_on_hold_minor: int
    ledger_invariant_minor: int
    batches_missing_record: List[str]
    is_consistent: bool


class ReconcileManualPayoutRequest(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    amount_minor: int = Field(..., gt=0)
    dry_run: bool = True
    idempotency_token: Optional[str] = Field(None, min_length=8, max_length=128)


class ReconciliationResult(BaseModel):
    success: bool
    message: str
    logs: List[str]
    batch_id: Optional[str] = None
    idempotency_token: Optional[str] = None
    dry_run: bool = False


class BackfillPayoutBatchRequest(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    amount_minor: int = Field(..., gt=0)
    batch_id: str = Field(..., min_length=1, max_length=128)


class BackfillResult(BaseModel):
    success: bool
    message: str
    logs: List[str]
    batch_id: str
    created: bool
    batch: PayoutBatchResponse


class PayoutRunRequest(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    cycle_key: Optional[str] = None
    dry_run: bool = False


class PayoutRunResult(BaseModel):
    """Outcome of one vendor cycle run."""
    vendor_id: str
    cycle_key: str
    status: str
    gross_amount_minor: int = 0
    fee_minor: int = 0
    net_amount_minor: int = 0
    entry_count: int = 0
    batch_id: Optional[str] = None
    transfer_ref: Optional[str] = None
    message: Optional[str] = None
    dry_run: bool = False


class PromotionResult(BaseModel):
    vendor_id: str
    promoted_entry_ids: List[int]
    promoted_amount_minor: int


class TransferWebhook(BaseModel):
    """Provider callback for a transfer outcome."""
    reference: str = Field(..., min_length=1)
    status: TransferOutcome


class TransferResponse(BaseModel):
    id: int
    vendor_id: str
    cycle_key: str
    attempt: int
    batch_id: str
    transfer_ref: Optional[str]
    status: TransferStatus
    net_amount_minor: int
    last_error: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True


class DLQItemResponse(BaseModel):
    id: int
    task_name: str
    error_message: str
    payload: Optional[Dict[str, Any]]
    status: str
    retry_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor: str
    action: str
    vendor_id: Optional[str]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    """Schema for audit trail list."""
    logs: List[AuditLogResponse]
    total: int
