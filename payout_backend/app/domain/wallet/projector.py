"""
Wallet Summary Projector (Domain Logic).

Derives balances from the ledger. The stored WalletSummary is updated
incrementally on every append; replay recomputes it from open lots.
Divergence between the two is reported, never corrected here.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import aliased

from payout_backend.app.core.exceptions import ConsistencyMismatchError
from payout_backend.app.db.types import utc_now, ensure_utc
from payout_backend.app.domain.payouts.scheduler import PayoutScheduler, next_payout_at, cycle_key_for
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.models.bank_account import BankAccount
from payout_backend.app.models.ledger_entry import LedgerEntry
from payout_backend.app.models.payout_batch import PayoutBatch
from payout_backend.app.models.wallet_enums import LedgerEntryType, LedgerSource
from payout_backend.app.models.wallet_summary import WalletSummary
from payout_backend.app.schemas.ledger import EarningsBucket, EarningsBySourceResponse
from payout_backend.app.schemas.payout import (
    BankAccountResponse,
    ConsistencyReport,
    EventBreakdown,
    UpcomingPayoutResponse,
    UpcomingTransaction,
    WalletSummaryResponse,
)

logger = logging.getLogger("payouts.wallet")


@dataclass(frozen=True)
class ReplayedBalances:
    eligible_minor: int
    on_hold_minor: int


def entry_deltas(row: LedgerEntry, related: Optional[LedgerEntry] = None) -> Tuple[int, int]:
    """(eligible delta, on-hold delta) contributed by one entry."""
    amount = row.amount_minor
    if row.entry_type == LedgerEntryType.DEBIT_HOLD:
        return 0, amount
    if row.entry_type == LedgerEntryType.CREDIT_RELEASE:
        return 0, -amount
    if row.entry_type == LedgerEntryType.CREDIT_ELIGIBLE:
        # A split remainder moves value already counted on its parent lot
        return (0, 0) if row.split_from_entry_id is not None else (amount, 0)
    if row.entry_type == LedgerEntryType.DEBIT_PAYOUT:
        return -amount, 0
    if row.entry_type == LedgerEntryType.DEBIT_REFUND:
        if related is not None and related.entry_type == LedgerEntryType.DEBIT_HOLD:
            return 0, -amount
        return -amount, 0
    raise ValueError(f"Unknown entry type {row.entry_type}")


class WalletSummaryProjector:

    @staticmethod
    async def get_summary(db: AsyncSession, vendor_id: str) -> Optional[WalletSummary]:
        return await db.get(WalletSummary, vendor_id)

    @staticmethod
    async def apply_entry(db: AsyncSession, row: LedgerEntry, related: Optional[LedgerEntry] = None) -> WalletSummary:
        """Fold one freshly appended entry into the stored projection."""
        if related is None and row.related_entry_id is not None:
            related = await db.get(LedgerEntry, row.related_entry_id)

        summary = await db.get(WalletSummary, row.vendor_id)
        if summary is None:
            summary = WalletSummary(
                vendor_id=row.vendor_id,
                currency=row.currency,
                eligible_balance_minor=0,
                on_hold_minor=0,
            )
            db.add(summary)
            await db.flush()

        eligible_delta, hold_delta = entry_deltas(row, related)
        summary.eligible_balance_minor += eligible_delta
        summary.on_hold_minor += hold_delta
        summary.last_updated_at = utc_now()

        if row.entry_type == LedgerEntryType.DEBIT_PAYOUT:
            paid_at = ensure_utc(row.created_at)
            if summary.last_payout_at is None or paid_at > summary.last_payout_at:
                summary.last_payout_at = paid_at

        await db.flush()
        return summary

    @staticmethod
    async def replay(db: AsyncSession, vendor_id: str) -> ReplayedBalances:
        """Recompute balances from the ledger alone."""
        credits = await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.CREDIT_ELIGIBLE)
        holds = await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.DEBIT_HOLD)
        return ReplayedBalances(
            eligible_minor=sum(lot.open_amount_minor for lot in credits),
            on_hold_minor=sum(lot.open_amount_minor for lot in holds),
        )

    @staticmethod
    async def ledger_invariant(db: AsyncSession, vendor_id: str) -> int:
        """
        Root credits minus payouts minus refunds of credits.

        Must be >= 0 and equal the replayed eligible balance.
        """
        async def total(query) -> int:
            return int((await db.execute(query)).scalar())

        root_credits = await total(
            select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0)).where(
                LedgerEntry.vendor_id == vendor_id,
                LedgerEntry.entry_type == LedgerEntryType.CREDIT_ELIGIBLE,
                LedgerEntry.split_from_entry_id.is_(None),
            )
        )
        payouts = await total(
            select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0)).where(
                LedgerEntry.vendor_id == vendor_id,
                LedgerEntry.entry_type == LedgerEntryType.DEBIT_PAYOUT,
            )
        )
        target = aliased(LedgerEntry)
        credit_refunds = await total(
            select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0))
            .join(target, LedgerEntry.related_entry_id == target.id)
            .where(
                LedgerEntry.vendor_id == vendor_id,
                LedgerEntry.entry_type == LedgerEntryType.DEBIT_REFUND,
                target.entry_type == LedgerEntryType.CREDIT_ELIGIBLE,
            )
        )
        return root_credits - payouts - credit_refunds

    @staticmethod
    async def get_wallet(db: AsyncSession, vendor_id: str, now: Optional[datetime] = None) -> WalletSummaryResponse:
        """Fresh wallet view, assembled per request."""
        now = ensure_utc(now) if now else utc_now()
        summary = await db.get(WalletSummary, vendor_id)
        schedule = await PayoutScheduler.schedule_for(db, vendor_id)
        bank = await db.get(BankAccount, vendor_id)

        return WalletSummaryResponse(
            vendor_id=vendor_id,
            currency=summary.currency if summary else None,
            eligible_balance_minor=summary.eligible_balance_minor if summary else 0,
            on_hold_minor=summary.on_hold_minor if summary else 0,
            next_payout_at=next_payout_at(schedule, now),
            last_payout_at=summary.last_payout_at if summary else None,
            last_updated_at=summary.last_updated_at if summary else None,
            schedule=schedule,
            bank=BankAccountResponse.model_validate(bank) if bank else None,
        )

    @staticmethod
    async def get_upcoming_payout(
        db: AsyncSession,
        vendor_id: str,
        source: Optional[LedgerSource] = None,
        now: Optional[datetime] = None,
    ) -> UpcomingPayoutResponse:
        """
        What the next payout run will settle, and what comes after it.

        Lots targeted at the next cycle or earlier (arrears) make up the
        next payout; later cycles are listed as future.
        """
        now = ensure_utc(now) if now else utc_now()
        schedule = await PayoutScheduler.schedule_for(db, vendor_id)
        upcoming_at = next_payout_at(schedule, now)
        upcoming_key = cycle_key_for(schedule, upcoming_at)

        lots = await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.CREDIT_ELIGIBLE, source=source)
        due = [lot for lot in lots if lot.entry.target_payout_key <= upcoming_key]
        future = [lot for lot in lots if lot.entry.target_payout_key > upcoming_key]

        by_event = defaultdict(int)
        for lot in due:
            by_event[lot.entry.event_id or "unknown"] += lot.open_amount_minor

        def to_tx(lot) -> UpcomingTransaction:
            return UpcomingTransaction(
                id=lot.entry.id,
                created_at=lot.entry.created_at,
                target_payout_at=lot.entry.target_payout_at,
                amount_minor=lot.open_amount_minor,
                event_id=lot.entry.event_id,
                order_id=lot.entry.order_ref,
            )

        due_sorted = sorted(due, key=lambda lot: (lot.entry.created_at, lot.entry.id), reverse=True)
        future_sorted = sorted(future, key=lambda lot: (lot.entry.target_payout_at, lot.entry.id))

        summary = await db.get(WalletSummary, vendor_id)
        return UpcomingPayoutResponse(
            vendor_id=vendor_id,
            currency=summary.currency if summary else None,
            next_payout_at=upcoming_at,
            total_amount_minor=sum(lot.open_amount_minor for lot in due),
            future_amount_minor=sum(lot.open_amount_minor for lot in future),
            wallet_balance_minor=summary.eligible_balance_minor if summary else 0,
            eligible_count=len(due),
            future_count=len(future),
            breakdown=[EventBreakdown(event_id=k, amount_minor=v) for k, v in sorted(by_event.items())],
            transactions=[to_tx(lot) for lot in due_sorted],
            future_transactions=[to_tx(lot) for lot in future_sorted],
        )

    @staticmethod
    async def batches_missing_record(db: AsyncSession, vendor_id: str) -> list[str]:
        """Batch ids on debit_payout entries with no PayoutBatch row."""
        result = await db.execute(
            select(LedgerEntry.payout_batch_id)
            .outerjoin(PayoutBatch, PayoutBatch.batch_id == LedgerEntry.payout_batch_id)
            .where(
                LedgerEntry.vendor_id == vendor_id,
                LedgerEntry.entry_type == LedgerEntryType.DEBIT_PAYOUT,
                LedgerEntry.payout_batch_id.is_not(None),
                PayoutBatch.batch_id.is_(None),
            )
            .distinct()
        )
        return sorted(result.scalars().all())

    @staticmethod
    async def check_consistency(db: AsyncSession, vendor_id: str, now: Optional[datetime] = None) -> ConsistencyReport:
        """
        Compare the stored wallet with the ledger.

        diff = |next cycle total + future total - stored eligible balance|
        drift = stored eligible balance - (next cycle total + future total)

        A positive drift means the stored wallet promises more than the
        ledger holds.
        """
        upcoming = await WalletSummaryProjector.get_upcoming_payout(db, vendor_id, now=now)
        summary = await db.get(WalletSummary, vendor_id)
        replayed = await WalletSummaryProjector.replay(db, vendor_id)
        invariant = await WalletSummaryProjector.ledger_invariant(db, vendor_id)
        missing = await WalletSummaryProjector.batches_missing_record(db, vendor_id)

        wallet_balance = summary.eligible_balance_minor if summary else 0
        projected_hold = summary.on_hold_minor if summary else 0
        drift = wallet_balance - (upcoming.total_amount_minor + upcoming.future_amount_minor)
        diff = abs(drift)

        is_consistent = (
            diff == 0
            and replayed.eligible_minor == wallet_balance
            and replayed.on_hold_minor == projected_hold
            and invariant == replayed.eligible_minor
            and invariant >= 0
            and not missing
        )

        report = ConsistencyReport(
            vendor_id=vendor_id,
            next_cycle_total_minor=upcoming.total_amount_minor,
            future_cycle_total_minor=upcoming.future_amount_minor,
            wallet_balance_minor=wallet_balance,
            diff_minor=diff,
            drift_minor=drift,
            replayed_eligible_minor=replayed.eligible_minor,
            replayed_on_hold_minor=replayed.on_hold_minor,
            projected_on_hold_minor=projected_hold,
            ledger_invariant_minor=invariant,
            batches_missing_record=missing,
            is_consistent=is_consistent,
        )

        if not is_consistent:
            logger.warning(
                "Wallet consistency mismatch",
                extra={"vendor_id": vendor_id, "diff_minor": diff, "drift_minor": drift, "missing_batches": missing}
            )
        return report

    @staticmethod
    async def assert_consistent(db: AsyncSession, vendor_id: str, now: Optional[datetime] = None) -> ConsistencyReport:
        """
        Raises:
            ConsistencyMismatchError: if any check in the report fails
        """
        report = await WalletSummaryProjector.check_consistency(db, vendor_id, now=now)
        if not report.is_consistent:
            raise ConsistencyMismatchError(
                vendor_id,
                report.diff_minor,
                details=report.model_dump(mode="json", exclude={"vendor_id", "diff_minor"}),
            )
        return report

    @staticmethod
    async def earnings_by_source(db: AsyncSession, vendor_id: str) -> EarningsBySourceResponse:
        """Open eligible and on-hold amounts split by revenue source."""
        buckets = {source: EarningsBucket() for source in LedgerSource}
        for lot in await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.CREDIT_ELIGIBLE):
            buckets[lot.entry.source].eligible_minor += lot.open_amount_minor
        for lot in await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.DEBIT_HOLD):
            buckets[lot.entry.source].on_hold_minor += lot.open_amount_minor

        return EarningsBySourceResponse(
            vendor_id=vendor_id,
            event=buckets[LedgerSource.EVENT],
            store=buckets[LedgerSource.STORE],
        )
