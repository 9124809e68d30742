"""
Vendor Wallet API Endpoints.

Balances, ledger history, payout schedule and bank account of one vendor.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from datetime import datetime
from typing import List, Optional

from payout_backend.app.db.session import get_db
from payout_backend.app.core.dependencies import get_actor
from payout_backend.app.domain.payouts.fee_calculator import quote_payout
from payout_backend.app.domain.payouts.scheduler import PayoutScheduler
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.domain.wallet.projector import WalletSummaryProjector
from payout_backend.app.models.payout_batch import PayoutBatch
from payout_backend.app.models.wallet_enums import LedgerEntryType, LedgerSource, PayoutTier
from payout_backend.app.schemas.ledger import (
    EarningsBySourceResponse,
    LedgerEntryList,
    LedgerEntryResponse,
    LedgerQuery,
)
from payout_backend.app.schemas.payout import (
    BankAccountDetails,
    BankAccountResponse,
    FeeQuote,
    PayoutBatchResponse,
    PayoutScheduleConfig,
    PayoutScheduleUpdate,
    WalletSummaryResponse,
)
from payout_backend.app.services.audit import AuditAction, log_event
from payout_backend.app.services.bank_accounts import BankAccountService
from payout_backend.app.services.bank_transfer import get_bank_client

router = APIRouter(prefix="/vendors/{vendor_id}", tags=["Vendor - Wallet"])


@router.get("/wallet", response_model=WalletSummaryResponse)
async def get_wallet(
    vendor_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Current balances, next payout time, schedule and bank account."""
    return await WalletSummaryProjector.get_wallet(db, vendor_id)


@router.get("/ledger", response_model=LedgerEntryList)
async def list_ledger(
    vendor_id: str = Path(..., min_length=1),
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
    source: Optional[LedgerSource] = Query(None),
    entry_type: Optional[LedgerEntryType] = Query(None),
    target_payout_key: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    """Ledger entries, newest first."""
    filters = LedgerQuery(
        created_from=created_from,
        created_to=created_to,
        source=source,
        entry_type=entry_type,
        target_payout_key=target_payout_key,
        limit=limit,
    )
    entries = await LedgerStore.query(db, vendor_id, filters)
    return LedgerEntryList(entries=[LedgerEntryResponse.model_validate(e) for e in entries])


@router.get("/earnings", response_model=EarningsBySourceResponse)
async def earnings_by_source(
    vendor_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Eligible and on-hold amounts per revenue source."""
    return await WalletSummaryProjector.earnings_by_source(db, vendor_id)


@router.get("/payouts", response_model=List[PayoutBatchResponse])
async def list_payouts(
    vendor_id: str = Path(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Payout batches, newest first."""
    result = await db.execute(
        select(PayoutBatch)
        .where(PayoutBatch.vendor_id == vendor_id)
        .order_by(desc(PayoutBatch.created_at))
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/payout-schedule", response_model=PayoutScheduleConfig)
async def get_payout_schedule(
    vendor_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    return await PayoutScheduler.schedule_for(db, vendor_id)


@router.put("/payout-schedule", response_model=PayoutScheduleConfig)
async def update_payout_schedule(
    update: PayoutScheduleUpdate,
    vendor_id: str = Path(..., min_length=1),
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Change the payout tier.

    Applies to entries recorded from now on; existing entries keep their cycle.
    """
    previous = await PayoutScheduler.schedule_for(db, vendor_id)
    config = await PayoutScheduler.set_schedule(db, vendor_id, update.tier)
    await db.commit()

    await log_event(
        db,
        AuditAction.PAYOUT_SCHEDULE_CHANGED,
        actor=actor,
        vendor_id=vendor_id,
        metadata={"from": previous.tier.value, "to": config.tier.value},
    )
    return config


@router.get("/fee-quote", response_model=FeeQuote)
async def fee_quote(
    vendor_id: str = Path(..., min_length=1),
    amount_minor: int = Query(..., ge=0),
    tier: Optional[PayoutTier] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Fee preview for an amount under the vendor's tier (or a candidate tier)."""
    if tier is None:
        tier = (await PayoutScheduler.schedule_for(db, vendor_id)).tier
    return quote_payout(amount_minor, tier)


@router.put("/bank-account", response_model=BankAccountResponse)
async def put_bank_account(
    details: BankAccountDetails,
    vendor_id: str = Path(..., min_length=1),
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Register or replace the payout account. Payouts wait until it is verified."""
    account = await BankAccountService.register(db, vendor_id, details)
    await db.commit()

    await log_event(
        db,
        AuditAction.BANK_ACCOUNT_UPDATED,
        actor=actor,
        vendor_id=vendor_id,
        metadata={"bank_code": details.bank_code, "account_last4": details.account_number[-4:]},
    )
    return account


@router.post("/bank-account/verify", response_model=BankAccountResponse)
async def verify_bank_account(
    vendor_id: str = Path(..., min_length=1),
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    bank_client=Depends(get_bank_client),
):
    """Check the account holder name with the bank."""
    account = await BankAccountService.verify(db, bank_client, vendor_id)
    await db.commit()

    await log_event(db, AuditAction.BANK_ACCOUNT_VERIFIED, actor=actor, vendor_id=vendor_id)
    return account
