"""
Eligibility Engine (Domain Logic).

Promotes holds whose window has ended into eligible credit: each due
hold gets a credit_release zeroing it and a credit_eligible carrying
the same amount into the vendor's next payout cycle.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payout_backend.app.core.exceptions import ConcurrencyConflictError
from payout_backend.app.db.types import utc_now, ensure_utc
from payout_backend.app.domain.payouts.scheduler import PayoutScheduler, cycle_for
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.models.wallet_enums import LedgerEntryType
from payout_backend.app.schemas.ledger import CreditEligibleEntry, CreditReleaseEntry
from payout_backend.app.schemas.payout import PromotionResult
from payout_backend.app.services.vendor_lease import VendorLease

logger = logging.getLogger("payouts.eligibility")


class EligibilityEngine:

    @staticmethod
    async def promote_due_holds(
        db: AsyncSession,
        redis,
        vendor_id: str,
        now: Optional[datetime] = None,
    ) -> PromotionResult:
        """
        Promote every open hold of a vendor whose target_payout_at <= now.

        Runs under the vendor lease and commits. A hold already promoted
        has no open amount left and is not picked up again.

        Raises:
            ConcurrencyConflictError: vendor lease held elsewhere
        """
        now = ensure_utc(now) if now else utc_now()

        async with VendorLease(redis, vendor_id):
            due = await LedgerStore.open_lots(
                db, vendor_id, LedgerEntryType.DEBIT_HOLD, target_payout_before=now
            )
            if not due:
                return PromotionResult(vendor_id=vendor_id, promoted_entry_ids=[], promoted_amount_minor=0)

            config = await PayoutScheduler.schedule_for(db, vendor_id)
            slot = cycle_for(config, now)

            promoted_ids = []
            total = 0
            for lot in due:
                hold = lot.entry
                common = dict(
                    vendor_id=hold.vendor_id,
                    currency=hold.currency,
                    source=hold.source,
                    order_ref=hold.order_ref,
                    event_id=hold.event_id,
                    amount_minor=lot.open_amount_minor,
                    created_at=now,
                )
                rows = await LedgerStore.append_many(db, [
                    CreditReleaseEntry(
                        **common,
                        target_payout_at=hold.target_payout_at,
                        target_payout_key=hold.target_payout_key,
                        releases_entry_id=hold.id,
                        note="Hold window ended",
                    ),
                    CreditEligibleEntry(
                        **common,
                        target_payout_at=slot.payout_at,
                        target_payout_key=slot.key,
                        promoted_from_entry_id=hold.id,
                        note=f"Promoted from hold {hold.id}",
                    ),
                ])
                promoted_ids.append(rows[1].id)
                total += lot.open_amount_minor

            await db.commit()

        logger.info(
            "Holds promoted",
            extra={"vendor_id": vendor_id, "count": len(promoted_ids), "amount_minor": total, "cycle_key": slot.key}
        )
        return PromotionResult(vendor_id=vendor_id, promoted_entry_ids=promoted_ids, promoted_amount_minor=total)

    @staticmethod
    async def sweep(db: AsyncSession, redis, now: Optional[datetime] = None) -> List[PromotionResult]:
        """Promote due holds for every vendor, skipping vendors that are locked."""
        now = ensure_utc(now) if now else utc_now()
        results = []
        for vendor_id in await EligibilityEngine.vendors_due(db, now):
            try:
                result = await EligibilityEngine.promote_due_holds(db, redis, vendor_id, now=now)
            except ConcurrencyConflictError:
                logger.info("Promotion skipped, vendor locked", extra={"vendor_id": vendor_id})
                continue
            if result.promoted_entry_ids:
                results.append(result)
        return results

    @staticmethod
    async def vendors_due(db: AsyncSession, now: datetime) -> List[str]:
        return await LedgerStore.vendors_with_open(db, LedgerEntryType.DEBIT_HOLD, target_payout_before=now)
