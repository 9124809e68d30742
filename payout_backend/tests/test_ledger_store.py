"""
Ledger Entry Store Tests.

Append-only validation, lot accounting and queries.
"""

import pytest
from sqlalchemy import select, func

from payout_backend.app.core.exceptions import LedgerValidationError
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.domain.wallet.projector import WalletSummaryProjector
from payout_backend.app.models.ledger_entry import LedgerEntry
from payout_backend.app.models.vendor_account import VendorAccount
from payout_backend.app.models.wallet_enums import LedgerEntryType, LedgerSource
from payout_backend.app.schemas.ledger import (
    CreditReleaseEntry,
    DebitPayoutEntry,
    DebitRefundEntry,
    LedgerQuery,
)
from factories import at, add_credit, add_hold


def _payout(vendor_id, lot, amount, batch_id="batch_1"):
    return DebitPayoutEntry(
        vendor_id=vendor_id,
        currency=lot.currency,
        source=lot.source,
        order_ref=lot.order_ref,
        amount_minor=amount,
        target_payout_at=lot.target_payout_at,
        target_payout_key=lot.target_payout_key,
        consumes_entry_id=lot.id,
        payout_batch_id=batch_id,
    )


async def _count(db):
    return (await db.execute(select(func.count(LedgerEntry.id)))).scalar()


@pytest.mark.asyncio
async def test_first_entry_creates_vendor_with_currency(db_session):
    await add_hold(db_session, "vendor_1", 5000, at(6), at(15))

    account = await db_session.get(VendorAccount, "vendor_1")
    assert account.currency == "NGN"
    summary = await WalletSummaryProjector.get_summary(db_session, "vendor_1")
    assert summary.on_hold_minor == 5000
    assert summary.eligible_balance_minor == 0


@pytest.mark.asyncio
async def test_currency_mismatch_rejected(db_session):
    await add_credit(db_session, "vendor_1", 1000, at(6))

    with pytest.raises(LedgerValidationError):
        await add_credit(db_session, "vendor_1", 1000, at(7), currency="USD")
    await db_session.rollback()
    assert await _count(db_session) == 1


@pytest.mark.asyncio
async def test_parse_entry_rejects_malformed_payloads():
    base = {
        "vendor_id": "vendor_1",
        "currency": "NGN",
        "source": "event",
        "order_ref": "order_1",
        "target_payout_at": "2025-01-10T13:00:00Z",
        "target_payout_key": "2025-01-10",
    }
    with pytest.raises(LedgerValidationError):
        LedgerStore.parse_entry({**base, "type": "debit_hold", "amount_minor": 0})
    with pytest.raises(LedgerValidationError):
        LedgerStore.parse_entry({**base, "type": "debit_hold", "amount_minor": 10, "vendor_id": "  "})
    with pytest.raises(LedgerValidationError):
        LedgerStore.parse_entry({**base, "type": "debit_payout", "amount_minor": 10})
    with pytest.raises(LedgerValidationError):
        LedgerStore.parse_entry({
            **base, "type": "credit_eligible", "amount_minor": 10,
            "promoted_from_entry_id": 1, "split_from_entry_id": 2,
        })
    with pytest.raises(LedgerValidationError):
        LedgerStore.parse_entry({**base, "type": "credit_bonus", "amount_minor": 10})

    entry = LedgerStore.parse_entry({**base, "type": "debit_refund", "amount_minor": 10, "refunds_entry_id": 3})
    assert isinstance(entry, DebitRefundEntry)
    assert entry.target_payout_at.tzinfo is not None


@pytest.mark.asyncio
async def test_payout_must_reference_a_credit_of_the_same_vendor(db_session):
    hold = await add_hold(db_session, "vendor_1", 5000, at(6), at(15))
    other = await add_credit(db_session, "vendor_2", 5000, at(6))

    with pytest.raises(LedgerValidationError):
        await LedgerStore.append(db_session, _payout("vendor_1", hold, 100))
    with pytest.raises(LedgerValidationError):
        await LedgerStore.append(db_session, _payout("vendor_1", other, 100))

    missing = _payout("vendor_1", other, 100).model_copy(update={"consumes_entry_id": 9999})
    with pytest.raises(LedgerValidationError):
        await LedgerStore.append(db_session, missing)


@pytest.mark.asyncio
async def test_consumption_cannot_exceed_open_amount(db_session):
    lot = await add_credit(db_session, "vendor_1", 1000, at(6))

    with pytest.raises(LedgerValidationError):
        await LedgerStore.append(db_session, _payout("vendor_1", lot, 1001))

    # Two entries in one group share the lot's open amount
    refund = DebitRefundEntry(
        vendor_id="vendor_1",
        currency="NGN",
        source=LedgerSource.EVENT,
        order_ref=lot.order_ref,
        amount_minor=600,
        target_payout_at=lot.target_payout_at,
        target_payout_key=lot.target_payout_key,
        refunds_entry_id=lot.id,
    )
    with pytest.raises(LedgerValidationError):
        await LedgerStore.append_many(db_session, [refund, _payout("vendor_1", lot, 600)])
    await db_session.rollback()
    assert await _count(db_session) == 1


@pytest.mark.asyncio
async def test_release_must_cover_the_whole_hold(db_session):
    hold = await add_hold(db_session, "vendor_1", 5000, at(6), at(15))
    release = CreditReleaseEntry(
        vendor_id="vendor_1",
        currency="NGN",
        source=LedgerSource.EVENT,
        order_ref=hold.order_ref,
        amount_minor=4000,
        target_payout_at=hold.target_payout_at,
        target_payout_key=hold.target_payout_key,
        releases_entry_id=hold.id,
    )
    with pytest.raises(LedgerValidationError):
        await LedgerStore.append(db_session, release)

    entry_id = await LedgerStore.append(db_session, release.model_copy(update={"amount_minor": 5000}))
    await db_session.commit()
    assert entry_id > hold.id
    assert await LedgerStore.open_amount(db_session, hold) == 0


@pytest.mark.asyncio
async def test_open_lots_are_fifo_and_skip_consumed(db_session):
    second = await add_credit(db_session, "vendor_1", 800, at(7))
    first = await add_credit(db_session, "vendor_1", 1000, at(6))
    third = await add_credit(db_session, "vendor_1", 300, at(8), key="2025-01-17")

    await LedgerStore.append(db_session, _payout("vendor_1", first, 1000))
    await db_session.commit()

    lots = await LedgerStore.open_lots(db_session, "vendor_1", LedgerEntryType.CREDIT_ELIGIBLE)
    assert [lot.entry.id for lot in lots] == [second.id, third.id]

    due = await LedgerStore.open_lots(
        db_session, "vendor_1", LedgerEntryType.CREDIT_ELIGIBLE, target_payout_key_upto="2025-01-10"
    )
    assert [lot.entry.id for lot in due] == [second.id]

    unlocked = await LedgerStore.open_lots(
        db_session, "vendor_1", LedgerEntryType.CREDIT_ELIGIBLE, exclude_ids=[second.id]
    )
    assert [lot.entry.id for lot in unlocked] == [third.id]


@pytest.mark.asyncio
async def test_query_orders_and_filters(db_session):
    await add_credit(db_session, "vendor_1", 100, at(6), source=LedgerSource.EVENT)
    await add_credit(db_session, "vendor_1", 200, at(7), source=LedgerSource.STORE)
    await add_hold(db_session, "vendor_1", 300, at(8), at(17), source=LedgerSource.STORE)

    newest = await LedgerStore.query(db_session, "vendor_1")
    assert [e.amount_minor for e in newest] == [300, 200, 100]

    oldest = await LedgerStore.query(db_session, "vendor_1", oldest_first=True)
    assert [e.amount_minor for e in oldest] == [100, 200, 300]

    store_credits = await LedgerStore.query(
        db_session, "vendor_1",
        LedgerQuery(source=LedgerSource.STORE, entry_type=LedgerEntryType.CREDIT_ELIGIBLE),
    )
    assert [e.amount_minor for e in store_credits] == [200]

    window = await LedgerStore.query(db_session, "vendor_1", LedgerQuery(created_from=at(7), created_to=at(7, 23)))
    assert [e.amount_minor for e in window] == [200]

    limited = await LedgerStore.query(db_session, "vendor_1", LedgerQuery(limit=1))
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_second_payout_of_a_lot_is_rejected(db_session):
    lot = await add_credit(db_session, "vendor_1", 1000, at(6))
    await LedgerStore.append(db_session, _payout("vendor_1", lot, 400))
    await db_session.commit()

    # Open amount check rejects it before the unique index would
    with pytest.raises(LedgerValidationError):
        await LedgerStore.append(db_session, _payout("vendor_1", lot, 700, batch_id="batch_2"))
