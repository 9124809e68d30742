"""
Concurrency Tests.

Validates that one vendor's money-moving operations never overlap.
"""

import pytest
import asyncio

from payout_backend.app.core.exceptions import ConcurrencyConflictError
from payout_backend.app.domain.payouts.batch_processor import BatchProcessor, RunStatus
from payout_backend.app.domain.wallet.projector import WalletSummaryProjector
from payout_backend.app.services.vendor_lease import VendorLease, is_vendor_locked, lease_key
from factories import at, add_credit, add_verified_bank


@pytest.mark.asyncio
async def test_second_holder_is_rejected(redis):
    """Lease 1 -> success. Lease 2 on the same vendor -> ConcurrencyConflictError."""
    async with VendorLease(redis, "vendor_1"):
        assert await is_vendor_locked(redis, "vendor_1")
        with pytest.raises(ConcurrencyConflictError):
            await VendorLease(redis, "vendor_1").acquire()

        # Other vendors are independent
        async with VendorLease(redis, "vendor_2"):
            pass

    assert not await is_vendor_locked(redis, "vendor_1")


@pytest.mark.asyncio
async def test_lease_released_on_error(redis):
    with pytest.raises(RuntimeError):
        async with VendorLease(redis, "vendor_1"):
            raise RuntimeError("boom")
    assert not await is_vendor_locked(redis, "vendor_1")


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(redis):
    stale = await VendorLease(redis, "vendor_1", ttl_seconds=30).acquire()
    redis.advance(31)

    fresh = await VendorLease(redis, "vendor_1").acquire()

    # The stale holder must not delete the new holder's lease
    assert await stale.release() is False
    assert await redis.get(lease_key("vendor_1")) == fresh.token
    assert await fresh.release() is True


@pytest.mark.asyncio
async def test_concurrent_cycle_runs_pay_once(session_factory, redis, bank):
    """Two workers racing on the same cycle produce one transfer."""
    async with session_factory() as setup:
        await add_credit(setup, "vendor_1", 1000, at(6))
        await add_verified_bank(setup, "vendor_1")

    async def worker():
        async with session_factory() as db:
            try:
                return await BatchProcessor.run_cycle(db, redis, bank, "vendor_1", cycle_key="2025-01-10")
            except ConcurrencyConflictError:
                return None

    results = await asyncio.gather(worker(), worker())

    statuses = sorted(r.status for r in results if r is not None)
    assert RunStatus.SETTLED in statuses
    assert set(statuses) <= {RunStatus.SETTLED, RunStatus.ALREADY_SETTLED}
    assert bank.initiate_calls == 1

    async with session_factory() as db:
        summary = await WalletSummaryProjector.get_summary(db, "vendor_1")
        assert summary.eligible_balance_minor == 0
