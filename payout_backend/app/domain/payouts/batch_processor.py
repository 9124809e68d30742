"""
Batch Processor (Domain Logic).

Settles a vendor's eligible credit to their bank account once per cycle.

Flow:
1. Idempotency check on (vendor, cycle): settled -> no-op, in flight -> resolve
2. Collect open credit lots due by the cycle, not locked by another transfer
3. Compute gross, fee and net; skip when nothing is payable
4. Persist the transfer IN_FLIGHT and commit, then dispatch
5. Poll once: success settles, failure records a failed batch,
   pending or unknown leaves the transfer in flight
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from payout_backend.app.core.config import settings
from payout_backend.app.core.exceptions import (
    ConcurrencyConflictError,
    ProviderAmbiguousError,
    ResourceNotFoundError,
)
from payout_backend.app.core.reliability import retry_with_backoff
from payout_backend.app.db.types import utc_now, ensure_utc
from payout_backend.app.domain.payouts.fee_calculator import quote_payout
from payout_backend.app.domain.payouts.scheduler import PayoutScheduler, cycle_key_for, due_cycle, previous_payout_at
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.models.bank_account import BankAccount
from payout_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from payout_backend.app.models.payout_batch import PayoutBatch
from payout_backend.app.models.payout_transfer import PayoutTransfer
from payout_backend.app.models.vendor_account import VendorAccount
from payout_backend.app.models.wallet_enums import (
    LedgerEntryType,
    PayoutBatchOrigin,
    PayoutBatchStatus,
    TransferOutcome,
    TransferStatus,
)
from payout_backend.app.schemas.ledger import DebitPayoutEntry
from payout_backend.app.schemas.payout import PayoutRunResult
from payout_backend.app.services.audit import AuditAction, log_event
from payout_backend.app.services.bank_transfer import (
    BankTransferClient,
    TransferAmbiguousError,
    TransferError,
    TransferNotFoundError,
    TransferRejectedError,
    TransientTransferError,
)
from payout_backend.app.services.vendor_lease import VendorLease

logger = logging.getLogger("payouts.batch")

# Dead-letter task names
PAYOUT_CYCLE_TASK = "payout_cycle"
PAYOUT_SETTLEMENT_TASK = "payout_settlement"


class RunStatus:
    """Outcome labels of a cycle run."""
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


_TRANSFER_RUN_STATUS = {
    TransferStatus.SUCCEEDED: RunStatus.SETTLED,
    TransferStatus.FAILED: RunStatus.FAILED,
    TransferStatus.IN_FLIGHT: RunStatus.IN_FLIGHT,
}


def batch_id_for(vendor_id: str, cycle_key: str, attempt: int) -> str:
    return f"payout_{vendor_id}_{cycle_key}_{attempt}"


def _result(transfer: PayoutTransfer, status: Optional[str] = None, message: Optional[str] = None) -> PayoutRunResult:
    return PayoutRunResult(
        vendor_id=transfer.vendor_id,
        cycle_key=transfer.cycle_key,
        status=status or _TRANSFER_RUN_STATUS[transfer.status],
        gross_amount_minor=transfer.gross_amount_minor,
        fee_minor=transfer.fee_minor,
        net_amount_minor=transfer.net_amount_minor,
        entry_count=len(transfer.entry_ids or []),
        batch_id=transfer.batch_id,
        transfer_ref=transfer.transfer_ref,
        message=message,
    )


class BatchProcessor:

    @staticmethod
    async def in_flight_entry_ids(db: AsyncSession, vendor_id: str) -> Set[int]:
        """Ledger entries locked by transfers whose outcome is still open."""
        result = await db.execute(
            select(PayoutTransfer.entry_ids).where(
                PayoutTransfer.vendor_id == vendor_id,
                PayoutTransfer.status == TransferStatus.IN_FLIGHT,
            )
        )
        locked = set()
        for entry_ids in result.scalars().all():
            locked.update(int(i) for i in entry_ids or [])
        return locked

    @staticmethod
    async def _plan(db: AsyncSession, vendor_id: str, cycle_key: str, due_by: Optional[datetime]):
        config = await PayoutScheduler.schedule_for(db, vendor_id)
        lots = await LedgerStore.open_lots(
            db,
            vendor_id,
            LedgerEntryType.CREDIT_ELIGIBLE,
            target_payout_key_upto=cycle_key,
            target_payout_before=due_by,
            exclude_ids=await BatchProcessor.in_flight_entry_ids(db, vendor_id),
        )
        quote = quote_payout(sum(lot.open_amount_minor for lot in lots), config.tier)
        return config, lots, quote

    @staticmethod
    async def run_cycle(
        db: AsyncSession,
        redis,
        bank_client: BankTransferClient,
        vendor_id: str,
        cycle_key: Optional[str] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
        due_by: Optional[datetime] = None,
        retry_failed: bool = True,
    ) -> PayoutRunResult:
        """
        Run one payout cycle for a vendor.

        Args:
            cycle_key: local payout date; defaults to the latest scheduled payout
                at or before ``now``.
                Lots targeted at this cycle or any earlier one are paid.
            dry_run: compute gross, fee and net without writing or dispatching
            due_by: only pay lots whose target_payout_at has been reached
            retry_failed: start a new attempt when an earlier one failed

        Raises:
            ConcurrencyConflictError: vendor lease held elsewhere
        """
        now = ensure_utc(now) if now else utc_now()
        if cycle_key is None:
            config = await PayoutScheduler.schedule_for(db, vendor_id)
            cycle_key = cycle_key_for(config, previous_payout_at(config, now))

        if dry_run:
            _, lots, quote = await BatchProcessor._plan(db, vendor_id, cycle_key, due_by)
            return PayoutRunResult(
                vendor_id=vendor_id,
                cycle_key=cycle_key,
                status=RunStatus.DRY_RUN,
                gross_amount_minor=quote.gross_amount_minor,
                fee_minor=quote.fee_minor,
                net_amount_minor=quote.net_amount_minor,
                entry_count=len(lots),
                dry_run=True,
            )

        async with VendorLease(redis, vendor_id):
            return await BatchProcessor._run_locked(
                db, bank_client, vendor_id, cycle_key, due_by, retry_failed
            )

    @staticmethod
    async def _run_locked(
        db: AsyncSession,
        bank_client: BankTransferClient,
        vendor_id: str,
        cycle_key: str,
        due_by: Optional[datetime],
        retry_failed: bool,
    ) -> PayoutRunResult:
        result = await db.execute(
            select(PayoutTransfer)
            .where(PayoutTransfer.vendor_id == vendor_id, PayoutTransfer.cycle_key == cycle_key)
            .order_by(PayoutTransfer.attempt.asc())
        )
        transfers = list(result.scalars().all())

        for transfer in transfers:
            if transfer.status == TransferStatus.SUCCEEDED:
                return _result(transfer, RunStatus.ALREADY_SETTLED, "Cycle already paid")
        for transfer in transfers:
            if transfer.status == TransferStatus.IN_FLIGHT:
                return await BatchProcessor._poll_and_apply(db, bank_client, transfer)

        def skipped(reason: str, quote=None, count: int = 0) -> PayoutRunResult:
            logger.info("Payout cycle skipped", extra={"vendor_id": vendor_id, "cycle_key": cycle_key, "reason": reason})
            return PayoutRunResult(
                vendor_id=vendor_id,
                cycle_key=cycle_key,
                status=RunStatus.SKIPPED,
                gross_amount_minor=quote.gross_amount_minor if quote else 0,
                fee_minor=quote.fee_minor if quote else 0,
                net_amount_minor=quote.net_amount_minor if quote else 0,
                entry_count=count,
                message=reason,
            )

        if transfers and not retry_failed:
            return skipped("Previous attempt failed; retry from the dead-letter queue")

        _, lots, quote = await BatchProcessor._plan(db, vendor_id, cycle_key, due_by)
        if not lots:
            return skipped("Nothing due")
        if quote.net_amount_minor <= 0:
            return skipped("Net amount is not positive", quote, len(lots))

        bank = await db.get(BankAccount, vendor_id)
        if bank is None:
            return skipped("No bank account on file", quote, len(lots))
        if not bank.is_verified:
            return skipped("Bank account not verified", quote, len(lots))

        attempt = max((t.attempt for t in transfers), default=0) + 1
        transfer = PayoutTransfer(
            vendor_id=vendor_id,
            cycle_key=cycle_key,
            attempt=attempt,
            batch_id=batch_id_for(vendor_id, cycle_key, attempt),
            status=TransferStatus.IN_FLIGHT,
            gross_amount_minor=quote.gross_amount_minor,
            fee_minor=quote.fee_minor,
            net_amount_minor=quote.net_amount_minor,
            currency=lots[0].entry.currency,
            entry_ids=[lot.entry.id for lot in lots],
        )
        db.add(transfer)
        await db.commit()

        logger.info(
            "Payout dispatching",
            extra={
                "vendor_id": vendor_id,
                "cycle_key": cycle_key,
                "batch_id": transfer.batch_id,
                "net_amount_minor": transfer.net_amount_minor,
            }
        )

        try:
            transfer_ref = await BatchProcessor._dispatch(bank_client, bank, transfer)
        except TransientTransferError as exc:
            return await BatchProcessor._fail(db, transfer, f"Dispatch retries exhausted: {exc}", escalate=True)
        except TransferRejectedError as exc:
            return await BatchProcessor._fail(db, transfer, f"Provider rejected transfer: {exc}")
        except ProviderAmbiguousError as exc:
            transfer.last_error = exc.message
            await db.commit()
            logger.warning("Payout outcome unknown", extra={"vendor_id": vendor_id, "batch_id": transfer.batch_id})
            await log_event(
                db,
                AuditAction.PAYOUT_AMBIGUOUS,
                vendor_id=vendor_id,
                metadata={"batch_id": transfer.batch_id, "reason": exc.message},
            )
            return _result(transfer, RunStatus.IN_FLIGHT, exc.message)

        transfer.transfer_ref = transfer_ref
        await db.commit()
        return await BatchProcessor._poll_and_apply(db, bank_client, transfer)

    @staticmethod
    async def _dispatch(bank_client: BankTransferClient, bank: BankAccount, transfer: PayoutTransfer) -> str:
        """
        Send the transfer, retrying only failures that never reached the provider.

        Raises:
            ProviderAmbiguousError: timed out or the provider's answer is unknown
        """
        async def send() -> str:
            return await asyncio.wait_for(
                bank_client.initiate_transfer(
                    bank, transfer.net_amount_minor, transfer.currency, transfer.batch_id
                ),
                timeout=settings.transfer_timeout_seconds,
            )

        try:
            return await retry_with_backoff(
                send,
                retries=settings.transfer_max_retries,
                base_delay=settings.transfer_backoff_seconds,
                retry_on=(TransientTransferError,),
            )
        except asyncio.TimeoutError:
            raise ProviderAmbiguousError(transfer.batch_id, "Transfer dispatch timed out")
        except TransferAmbiguousError as exc:
            raise ProviderAmbiguousError(transfer.batch_id, str(exc) or "Transfer outcome unknown")

    @staticmethod
    async def _poll_and_apply(db: AsyncSession, bank_client: BankTransferClient, transfer: PayoutTransfer) -> PayoutRunResult:
        try:
            outcome = await asyncio.wait_for(
                bank_client.poll_status(transfer.batch_id),
                timeout=settings.transfer_timeout_seconds,
            )
        except TransferNotFoundError as exc:
            age = (utc_now() - ensure_utc(transfer.created_at)).total_seconds()
            if age >= settings.transfer_not_found_grace_seconds:
                return await BatchProcessor._fail(db, transfer, f"Provider has no record of the transfer: {exc}")
            logger.info("Transfer not visible at provider yet", extra={"batch_id": transfer.batch_id, "age_s": age})
            return _result(transfer, RunStatus.IN_FLIGHT, "Awaiting provider confirmation")
        except (asyncio.TimeoutError, TransferError) as exc:
            logger.warning(
                "Transfer status unavailable",
                extra={"batch_id": transfer.batch_id, "error": str(exc) or type(exc).__name__}
            )
            return _result(transfer, RunStatus.IN_FLIGHT, "Awaiting provider confirmation")
        return await BatchProcessor._apply_outcome(db, transfer, outcome)

    @staticmethod
    async def _apply_outcome(db: AsyncSession, transfer: PayoutTransfer, outcome: TransferOutcome) -> PayoutRunResult:
        if transfer.status != TransferStatus.IN_FLIGHT:
            return _result(transfer, message="Transfer already resolved")
        outcome = TransferOutcome(outcome)
        if outcome == TransferOutcome.SUCCESS:
            return await BatchProcessor._settle(db, transfer)
        if outcome == TransferOutcome.FAILURE:
            return await BatchProcessor._fail(db, transfer, "Provider reported failure")
        return _result(transfer, RunStatus.IN_FLIGHT, "Transfer pending at provider")

    @staticmethod
    async def _settle(db: AsyncSession, transfer: PayoutTransfer) -> PayoutRunResult:
        """Write one debit_payout per lot and the batch record."""
        transfer_id = transfer.id
        vendor_id = transfer.vendor_id
        batch_id = transfer.batch_id

        locked = set(int(i) for i in transfer.entry_ids or [])
        lots = [
            lot for lot in await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.CREDIT_ELIGIBLE)
            if lot.entry.id in locked
        ]
        paid = sum(lot.open_amount_minor for lot in lots)
        if paid != transfer.gross_amount_minor:
            logger.warning(
                "Open lots differ from dispatched gross",
                extra={"batch_id": batch_id, "open_minor": paid, "gross_minor": transfer.gross_amount_minor}
            )

        entries = [
            DebitPayoutEntry(
                vendor_id=vendor_id,
                currency=lot.entry.currency,
                source=lot.entry.source,
                order_ref=lot.entry.order_ref,
                event_id=lot.entry.event_id,
                amount_minor=lot.open_amount_minor,
                target_payout_at=lot.entry.target_payout_at,
                target_payout_key=lot.entry.target_payout_key,
                consumes_entry_id=lot.entry.id,
                payout_batch_id=batch_id,
                note=f"Paid in {batch_id}",
            )
            for lot in lots
        ]
        account = await db.get(VendorAccount, vendor_id)
        vendor_name = account.display_name if account else None

        async def write() -> PayoutTransfer:
            try:
                row = await db.get(PayoutTransfer, transfer_id)
                if row.status != TransferStatus.IN_FLIGHT:
                    return row
                await LedgerStore.append_many(db, entries)
                db.add(PayoutBatch(
                    batch_id=batch_id,
                    vendor_id=vendor_id,
                    vendor_name=vendor_name,
                    total_amount_minor=row.net_amount_minor,
                    gross_amount_minor=row.gross_amount_minor,
                    fee_minor=row.fee_minor,
                    currency=row.currency,
                    cycle_key=row.cycle_key,
                    status=PayoutBatchStatus.COMPLETED,
                    origin=PayoutBatchOrigin.AUTOMATED,
                    transfer_code=row.transfer_ref,
                ))
                row.status = TransferStatus.SUCCEEDED
                row.resolved_at = utc_now()
                row.last_error = None
                await db.commit()
                return row
            except OperationalError:
                await db.rollback()
                raise

        try:
            row = await retry_with_backoff(
                write,
                retries=settings.transfer_max_retries,
                base_delay=settings.transfer_backoff_seconds,
                retry_on=(OperationalError,),
            )
        except OperationalError as exc:
            logger.error("Payout settlement could not be stored", extra={"batch_id": batch_id, "error": str(exc)})
            await BatchProcessor._escalate(
                db, PAYOUT_SETTLEMENT_TASK, str(exc), {"vendor_id": vendor_id, "batch_id": batch_id}
            )
            row = await db.get(PayoutTransfer, transfer_id)
            return _result(row, RunStatus.IN_FLIGHT, "Paid at provider; settlement awaiting retry")

        await log_event(
            db,
            AuditAction.PAYOUT_SETTLED,
            vendor_id=vendor_id,
            metadata={"batch_id": batch_id, "net_amount_minor": row.net_amount_minor, "entries": len(entries)},
        )
        logger.info(
            "Payout settled",
            extra={"vendor_id": vendor_id, "batch_id": batch_id, "net_amount_minor": row.net_amount_minor}
        )
        return _result(row, RunStatus.SETTLED)

    @staticmethod
    async def _fail(db: AsyncSession, transfer: PayoutTransfer, reason: str, escalate: bool = False) -> PayoutRunResult:
        """Close a transfer as failed. Its entries stay open for a later cycle."""
        transfer.status = TransferStatus.FAILED
        transfer.last_error = reason
        transfer.resolved_at = utc_now()
        account = await db.get(VendorAccount, transfer.vendor_id)
        db.add(PayoutBatch(
            batch_id=transfer.batch_id,
            vendor_id=transfer.vendor_id,
            vendor_name=account.display_name if account else None,
            total_amount_minor=transfer.net_amount_minor,
            gross_amount_minor=transfer.gross_amount_minor,
            fee_minor=transfer.fee_minor,
            currency=transfer.currency,
            cycle_key=transfer.cycle_key,
            status=PayoutBatchStatus.FAILED,
            origin=PayoutBatchOrigin.AUTOMATED,
            transfer_code=transfer.transfer_ref,
        ))
        await db.commit()

        if escalate:
            await BatchProcessor._escalate(
                db,
                PAYOUT_CYCLE_TASK,
                reason,
                {"vendor_id": transfer.vendor_id, "cycle_key": transfer.cycle_key, "batch_id": transfer.batch_id},
            )

        logger.error(
            "Payout failed",
            extra={"vendor_id": transfer.vendor_id, "batch_id": transfer.batch_id, "reason": reason}
        )
        await log_event(
            db,
            AuditAction.PAYOUT_FAILED,
            vendor_id=transfer.vendor_id,
            metadata={"batch_id": transfer.batch_id, "reason": reason, "escalated": escalate},
        )
        return _result(transfer, RunStatus.FAILED, reason)

    @staticmethod
    async def _escalate(db: AsyncSession, task_name: str, error: str, payload: dict) -> DeadLetterQueue:
        item = DeadLetterQueue(
            task_name=task_name,
            error_message=error,
            payload=payload,
            status=DLQStatus.FAILED,
        )
        db.add(item)
        await db.commit()
        return item

    @staticmethod
    async def resolve_in_flight(
        db: AsyncSession,
        redis,
        bank_client: BankTransferClient,
        vendor_id: str,
    ) -> List[PayoutRunResult]:
        """
        Poll every in-flight transfer of a vendor and settle or fail it.

        Raises:
            ConcurrencyConflictError: vendor lease held elsewhere
        """
        async with VendorLease(redis, vendor_id):
            result = await db.execute(
                select(PayoutTransfer)
                .where(PayoutTransfer.vendor_id == vendor_id, PayoutTransfer.status == TransferStatus.IN_FLIGHT)
                .order_by(PayoutTransfer.id.asc())
            )
            return [
                await BatchProcessor._poll_and_apply(db, bank_client, transfer)
                for transfer in result.scalars().all()
            ]

    @staticmethod
    async def vendors_in_flight(db: AsyncSession) -> List[str]:
        result = await db.execute(
            select(PayoutTransfer.vendor_id)
            .where(PayoutTransfer.status == TransferStatus.IN_FLIGHT)
            .distinct()
        )
        return sorted(result.scalars().all())

    @staticmethod
    async def resolve_all_in_flight(db: AsyncSession, redis, bank_client: BankTransferClient) -> List[PayoutRunResult]:
        """Resolution pass over every vendor with an open transfer."""
        results = []
        for vendor_id in await BatchProcessor.vendors_in_flight(db):
            try:
                results.extend(await BatchProcessor.resolve_in_flight(db, redis, bank_client, vendor_id))
            except ConcurrencyConflictError:
                logger.info("Transfer resolution skipped, vendor locked", extra={"vendor_id": vendor_id})
        return results

    @staticmethod
    async def apply_transfer_outcome(
        db: AsyncSession,
        redis,
        reference: str,
        outcome: TransferOutcome,
    ) -> PayoutRunResult:
        """
        Apply a provider-reported outcome (webhook path).

        Repeated callbacks for a resolved transfer are no-ops.

        Raises:
            ResourceNotFoundError: no transfer carries this reference
            ConcurrencyConflictError: vendor lease held elsewhere
        """
        result = await db.execute(
            select(PayoutTransfer).where(
                or_(PayoutTransfer.batch_id == reference, PayoutTransfer.transfer_ref == reference)
            )
        )
        transfer = result.scalars().first()
        if transfer is None:
            raise ResourceNotFoundError("Payout transfer", reference)

        async with VendorLease(redis, transfer.vendor_id):
            await db.refresh(transfer)
            return await BatchProcessor._apply_outcome(db, transfer, outcome)

    @staticmethod
    async def run_due_cycles(
        db: AsyncSession,
        redis,
        bank_client: BankTransferClient,
        now: Optional[datetime] = None,
    ) -> List[PayoutRunResult]:
        """Run the open payout run of every vendor holding credit that is due."""
        now = ensure_utc(now) if now else utc_now()
        results = []
        for vendor_id in await BatchProcessor.vendors_due(db, now):
            try:
                result = await BatchProcessor.run_due_cycle(db, redis, bank_client, vendor_id, now=now)
            except ConcurrencyConflictError:
                logger.info("Payout run skipped, vendor locked", extra={"vendor_id": vendor_id})
                continue
            if result is not None:
                results.append(result)
        return results

    @staticmethod
    async def vendors_due(db: AsyncSession, now: datetime) -> List[str]:
        return await LedgerStore.vendors_with_open(
            db, LedgerEntryType.CREDIT_ELIGIBLE, target_payout_before=now
        )

    @staticmethod
    async def run_due_cycle(
        db: AsyncSession,
        redis,
        bank_client: BankTransferClient,
        vendor_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[PayoutRunResult]:
        """
        Scheduled run for one vendor.

        Runs only on the vendor's payout day, from the payout hour on, keyed
        on that payout's date. Failed attempts are not retried here.

        Returns:
            The run result, or None when no run is open or nothing was due
        """
        now = ensure_utc(now) if now else utc_now()
        config = await PayoutScheduler.schedule_for(db, vendor_id)
        slot = due_cycle(config, now)
        if slot is None:
            return None

        result = await BatchProcessor.run_cycle(
            db, redis, bank_client, vendor_id,
            cycle_key=slot.key, now=now, due_by=slot.payout_at, retry_failed=False,
        )
        if result.status == RunStatus.ALREADY_SETTLED:
            return None
        if result.status == RunStatus.SKIPPED and not result.entry_count:
            return None
        return result

    @staticmethod
    async def retry_dead_letter(
        db: AsyncSession,
        redis,
        bank_client: BankTransferClient,
        item_id: int,
    ) -> PayoutRunResult:
        """
        Re-run an escalated cycle or settlement.

        Raises:
            ResourceNotFoundError: unknown item
        """
        item = await db.get(DeadLetterQueue, item_id)
        if item is None:
            raise ResourceNotFoundError("Dead letter item", item_id)

        payload = item.payload or {}
        item.status = DLQStatus.RETRYING
        item.retry_count = (item.retry_count or 0) + 1
        item.last_retry_at = utc_now()
        await db.commit()

        if item.task_name == PAYOUT_SETTLEMENT_TASK:
            results = await BatchProcessor.resolve_in_flight(db, redis, bank_client, payload["vendor_id"])
            outcome = next((r for r in results if r.batch_id == payload.get("batch_id")), None)
            if outcome is None:
                transfer = (await db.execute(
                    select(PayoutTransfer).where(PayoutTransfer.batch_id == payload.get("batch_id"))
                )).scalar_one()
                outcome = _result(transfer)
        else:
            outcome = await BatchProcessor.run_cycle(
                db, redis, bank_client, payload["vendor_id"], cycle_key=payload.get("cycle_key")
            )

        item.status = DLQStatus.PROCESSED if outcome.status in (
            RunStatus.SETTLED, RunStatus.ALREADY_SETTLED, RunStatus.IN_FLIGHT
        ) else DLQStatus.FAILED
        await db.commit()
        return outcome
