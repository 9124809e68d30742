"""
Payout Worker.

Periodic driver of the payout engine. Each tick:
1. promotes holds whose window has ended
2. resolves transfers still in flight
3. runs the cycle for vendors whose payout time has come

Every vendor step gets its own session; one vendor failing is logged and
the tick moves on to the next.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payout_backend.app.core.config import settings
from payout_backend.app.core.exceptions import ConcurrencyConflictError
from payout_backend.app.db.session import AsyncSessionLocal
from payout_backend.app.db.types import utc_now
from payout_backend.app.domain.payouts.batch_processor import BatchProcessor
from payout_backend.app.domain.payouts.eligibility import EligibilityEngine
from payout_backend.app.services.bank_transfer import BankTransferClient

logger = logging.getLogger("payouts.worker")


async def _for_each_vendor(
    session_factory,
    step: str,
    vendor_ids: List[str],
    action: Callable[[AsyncSession, str], Awaitable],
) -> list:
    results = []
    for vendor_id in vendor_ids:
        async with session_factory() as db:
            try:
                result = await action(db, vendor_id)
            except ConcurrencyConflictError:
                logger.info("Worker step skipped, vendor locked", extra={"vendor_id": vendor_id, "step": step})
                continue
            except Exception:
                await db.rollback()
                logger.exception("Worker step failed", extra={"vendor_id": vendor_id, "step": step})
                continue
        if result:
            results.append(result)
    return results


async def tick(session_factory, redis, bank_client: BankTransferClient, now: Optional[datetime] = None) -> dict:
    """Run one promotion, resolution and payout pass."""
    now = now or utc_now()

    async def promote(db, vendor_id):
        result = await EligibilityEngine.promote_due_holds(db, redis, vendor_id, now=now)
        return result if result.promoted_entry_ids else None

    async def resolve(db, vendor_id):
        return await BatchProcessor.resolve_in_flight(db, redis, bank_client, vendor_id)

    async def pay(db, vendor_id):
        return await BatchProcessor.run_due_cycle(db, redis, bank_client, vendor_id, now=now)

    async with session_factory() as db:
        holding = await EligibilityEngine.vendors_due(db, now)
    promoted = await _for_each_vendor(session_factory, "promote", holding, promote)

    async with session_factory() as db:
        in_flight = await BatchProcessor.vendors_in_flight(db)
    resolved = await _for_each_vendor(session_factory, "resolve", in_flight, resolve)

    async with session_factory() as db:
        due = await BatchProcessor.vendors_due(db, now)
    runs = await _for_each_vendor(session_factory, "pay", due, pay)

    summary = {
        "promoted_vendors": len(promoted),
        "resolved_transfers": sum(len(batch) for batch in resolved),
        "cycle_runs": len(runs),
    }
    logger.info("Payout worker tick", extra=summary)
    return summary


async def run_forever(redis, bank_client: BankTransferClient, interval_seconds: Optional[int] = None) -> None:
    """Tick until cancelled. A failing tick is logged and the loop carries on."""
    interval = interval_seconds or settings.payout_worker_interval_seconds
    logger.info("Payout worker started", extra={"interval_s": interval})
    while True:
        try:
            await tick(AsyncSessionLocal, redis, bank_client)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Payout worker tick failed")
        await asyncio.sleep(interval)
