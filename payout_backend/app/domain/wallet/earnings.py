"""
Earnings Intake (Domain Logic).

Turns upstream order events into ledger entries. Settled orders enter
the wallet as holds (or directly as eligible credit); refunds debit the
hold or credit lot the order produced.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from payout_backend.app.core.exceptions import LedgerValidationError, ResourceNotFoundError
from payout_backend.app.db.types import utc_now, ensure_utc
from payout_backend.app.domain.payouts.scheduler import PayoutScheduler, cycle_for, hold_release_at
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.models.ledger_entry import LedgerEntry
from payout_backend.app.models.vendor_account import VendorAccount
from payout_backend.app.models.wallet_enums import LedgerEntryType
from payout_backend.app.schemas.ledger import (
    CreditEligibleEntry,
    DebitHoldEntry,
    DebitRefundEntry,
    OrderRefundedEvent,
    OrderSettledEvent,
)
from payout_backend.app.services.vendor_lease import VendorLease

logger = logging.getLogger("payouts.earnings")


async def _existing_settlement(db: AsyncSession, event: OrderSettledEvent) -> Optional[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry).where(
            LedgerEntry.vendor_id == event.vendor_id,
            LedgerEntry.source == event.source,
            LedgerEntry.order_ref == event.order_id,
            LedgerEntry.entry_type.in_([LedgerEntryType.DEBIT_HOLD, LedgerEntryType.CREDIT_ELIGIBLE]),
            LedgerEntry.promoted_from_entry_id.is_(None),
            LedgerEntry.split_from_entry_id.is_(None),
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def record_order_settlement(
    db: AsyncSession,
    redis,
    event: OrderSettledEvent,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    """
    Record a vendor's share of a settled order.

    With ``hold`` set (the default) the amount sits on hold until the
    tier's hold window ends; otherwise it is eligible for the next cycle.
    Re-delivered events return the entry written the first time.

    Raises:
        ConcurrencyConflictError: vendor lease held elsewhere
        LedgerValidationError: e.g. currency differs from the vendor's
    """
    settled_at = ensure_utc(event.settled_at) if event.settled_at else (ensure_utc(now) if now else utc_now())

    async with VendorLease(redis, event.vendor_id):
        existing = await _existing_settlement(db, event)
        if existing is not None:
            logger.info(
                "Duplicate order settlement ignored",
                extra={"vendor_id": event.vendor_id, "order_id": event.order_id, "entry_id": existing.id}
            )
            return existing

        config = await PayoutScheduler.schedule_for(db, event.vendor_id)
        common = dict(
            vendor_id=event.vendor_id,
            currency=event.currency,
            source=event.source,
            order_ref=event.order_id,
            event_id=event.event_id,
            amount_minor=event.amount_minor,
            created_at=settled_at,
        )

        if event.hold:
            release_at = hold_release_at(config, settled_at)
            entry = DebitHoldEntry(
                **common,
                target_payout_at=release_at,
                target_payout_key=cycle_for(config, release_at).key,
                note=f"Order {event.order_id} on hold",
            )
        else:
            slot = cycle_for(config, settled_at)
            entry = CreditEligibleEntry(
                **common,
                target_payout_at=slot.payout_at,
                target_payout_key=slot.key,
                note=f"Order {event.order_id} settled",
            )

        rows = await LedgerStore.append_many(db, [entry])

        if event.vendor_name:
            account = await db.get(VendorAccount, event.vendor_id)
            if account is not None and not account.display_name:
                account.display_name = event.vendor_name

        await db.commit()

    logger.info(
        "Order settlement recorded",
        extra={
            "vendor_id": event.vendor_id,
            "order_id": event.order_id,
            "entry_id": rows[0].id,
            "entry_type": rows[0].entry_type.value,
            "amount_minor": event.amount_minor,
        }
    )
    return rows[0]


async def _live_lot(db: AsyncSession, entry: LedgerEntry, amount_minor: int) -> LedgerEntry:
    """
    Follow a lot to where its value lives now.

    A promoted hold's value moved to its credit; a split credit's
    remainder carries what was left after a manual payout.
    """
    lot = entry
    while await LedgerStore.open_amount(db, lot) < amount_minor:
        result = await db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.entry_type == LedgerEntryType.CREDIT_ELIGIBLE,
                or_(
                    LedgerEntry.promoted_from_entry_id == lot.id,
                    LedgerEntry.split_from_entry_id == lot.id,
                ),
            )
            .order_by(LedgerEntry.id.asc())
            .limit(1)
        )
        successor = result.scalar_one_or_none()
        if successor is None:
            break
        lot = successor
    return lot


async def record_refund(
    db: AsyncSession,
    redis,
    event: OrderRefundedEvent,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    """
    Debit a refund against the hold or credit lot an order produced.

    Raises:
        ResourceNotFoundError: entry unknown for this vendor
        LedgerValidationError: lot locked by an in-flight payout, or
            refund larger than its open amount
    """
    from payout_backend.app.domain.payouts.batch_processor import BatchProcessor

    async with VendorLease(redis, event.vendor_id):
        origin = await db.get(LedgerEntry, event.entry_id)
        if origin is None or origin.vendor_id != event.vendor_id:
            raise ResourceNotFoundError("Ledger entry", event.entry_id)
        if origin.entry_type not in (LedgerEntryType.DEBIT_HOLD, LedgerEntryType.CREDIT_ELIGIBLE):
            raise LedgerValidationError(
                f"Cannot refund a {origin.entry_type.value} entry",
                details={"entry_id": origin.id}
            )

        target = await _live_lot(db, origin, event.amount_minor)
        if target.id in await BatchProcessor.in_flight_entry_ids(db, event.vendor_id):
            raise LedgerValidationError(
                f"Entry {target.id} is locked by an in-flight payout",
                details={"entry_id": target.id}
            )

        entry = DebitRefundEntry(
            vendor_id=target.vendor_id,
            currency=target.currency,
            source=target.source,
            order_ref=target.order_ref,
            event_id=target.event_id,
            amount_minor=event.amount_minor,
            target_payout_at=target.target_payout_at,
            target_payout_key=target.target_payout_key,
            refunds_entry_id=target.id,
            note=event.reason or f"Refund for order {target.order_ref}",
        )
        rows = await LedgerStore.append_many(db, [entry], now=now)
        await db.commit()

    logger.info(
        "Refund recorded",
        extra={"vendor_id": event.vendor_id, "entry_id": rows[0].id, "refunds_entry_id": target.id}
    )
    return rows[0]
