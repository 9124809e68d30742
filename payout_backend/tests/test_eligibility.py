"""
Eligibility Engine Tests.
"""

import pytest

from payout_backend.app.domain.payouts.eligibility import EligibilityEngine
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.domain.wallet.projector import WalletSummaryProjector
from payout_backend.app.models.wallet_enums import LedgerEntryType
from payout_backend.app.services.vendor_lease import VendorLease
from factories import at, add_hold


@pytest.mark.asyncio
async def test_due_hold_is_released_into_eligible_credit(db_session, redis):
    hold = await add_hold(db_session, "vendor_1", 5000, at(6), release_at=at(8, 9))

    result = await EligibilityEngine.promote_due_holds(db_session, redis, "vendor_1", now=at(8, 10))

    assert result.promoted_amount_minor == 5000
    assert len(result.promoted_entry_ids) == 1

    credit = await LedgerStore.get_entry(db_session, result.promoted_entry_ids[0])
    assert credit.entry_type == LedgerEntryType.CREDIT_ELIGIBLE
    assert credit.promoted_from_entry_id == hold.id
    # Wednesday promotion lands in Friday's weekly cycle
    assert credit.target_payout_key == "2025-01-10"
    assert credit.target_payout_at == at(10, 13)

    releases = await LedgerStore.query(db_session, "vendor_1", oldest_first=True)
    assert [e.entry_type for e in releases] == [
        LedgerEntryType.DEBIT_HOLD, LedgerEntryType.CREDIT_RELEASE, LedgerEntryType.CREDIT_ELIGIBLE,
    ]

    summary = await WalletSummaryProjector.get_summary(db_session, "vendor_1")
    assert summary.on_hold_minor == 0
    assert summary.eligible_balance_minor == 5000


@pytest.mark.asyncio
async def test_promotion_is_idempotent(db_session, redis):
    await add_hold(db_session, "vendor_1", 5000, at(6), release_at=at(8, 9))

    await EligibilityEngine.promote_due_holds(db_session, redis, "vendor_1", now=at(8, 10))
    again = await EligibilityEngine.promote_due_holds(db_session, redis, "vendor_1", now=at(8, 11))

    assert again.promoted_entry_ids == []
    summary = await WalletSummaryProjector.get_summary(db_session, "vendor_1")
    assert summary.eligible_balance_minor == 5000


@pytest.mark.asyncio
async def test_holds_inside_window_stay_on_hold(db_session, redis):
    await add_hold(db_session, "vendor_1", 5000, at(6), release_at=at(15))

    result = await EligibilityEngine.promote_due_holds(db_session, redis, "vendor_1", now=at(14))

    assert result.promoted_amount_minor == 0
    summary = await WalletSummaryProjector.get_summary(db_session, "vendor_1")
    assert summary.on_hold_minor == 5000


@pytest.mark.asyncio
async def test_promotion_after_cutoff_rolls_to_next_cycle(db_session, redis):
    await add_hold(db_session, "vendor_1", 700, at(2), release_at=at(9, 9))

    # Thursday 13:00 Lagos, past the weekly cutoff
    result = await EligibilityEngine.promote_due_holds(db_session, redis, "vendor_1", now=at(9, 12))
    credit = await LedgerStore.get_entry(db_session, result.promoted_entry_ids[0])
    assert credit.target_payout_key == "2025-01-17"


@pytest.mark.asyncio
async def test_sweep_skips_locked_vendors(db_session, redis):
    await add_hold(db_session, "vendor_1", 5000, at(6), release_at=at(8, 9))
    await add_hold(db_session, "vendor_2", 3000, at(6), release_at=at(8, 9))

    async with VendorLease(redis, "vendor_2"):
        results = await EligibilityEngine.sweep(db_session, redis, now=at(8, 10))

    assert [r.vendor_id for r in results] == ["vendor_1"]
    summary = await WalletSummaryProjector.get_summary(db_session, "vendor_2")
    assert summary.on_hold_minor == 3000

    # Picked up by the next sweep once the lease is gone
    results = await EligibilityEngine.sweep(db_session, redis, now=at(8, 10))
    assert [r.vendor_id for r in results] == ["vendor_2"]
