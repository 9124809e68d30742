"""
Reconciliation Service (Domain Logic).

Records payouts made outside the batch processor so the ledger matches
what actually reached the vendor's bank.

Manual payouts are two-phase: a dry run returns the consumption plan and
an idempotency token; the commit carries that token and is applied once.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payout_backend.app.core.config import settings
from payout_backend.app.core.exceptions import (
    InsufficientBalanceError,
    LedgerValidationError,
    ResourceNotFoundError,
)
from payout_backend.app.db.types import utc_now, ensure_utc
from payout_backend.app.domain.payouts.batch_processor import BatchProcessor
from payout_backend.app.domain.wallet.ledger_store import LedgerStore
from payout_backend.app.models.manual_reconciliation import ManualReconciliation
from payout_backend.app.models.payout_batch import PayoutBatch
from payout_backend.app.models.vendor_account import VendorAccount
from payout_backend.app.models.wallet_enums import LedgerEntryType, PayoutBatchOrigin, PayoutBatchStatus
from payout_backend.app.schemas.ledger import CreditEligibleEntry, DebitPayoutEntry
from payout_backend.app.schemas.payout import BackfillResult, PayoutBatchResponse, ReconciliationResult
from payout_backend.app.services.audit import AuditAction, log_event
from payout_backend.app.services.vendor_lease import VendorLease

logger = logging.getLogger("payouts.reconciliation")

MANUAL_TRANSFER_CODE = "MANUAL_PAYOUT"

# Dry-run tokens awaiting their commit: key -> "<vendor_id>:<amount_minor>"
RECONCILE_TOKEN_PREFIX = "reconcile:token:"


def token_key(token: str) -> str:
    return f"{RECONCILE_TOKEN_PREFIX}{token}"


def _token_value(vendor_id: str, amount_minor: int) -> str:
    return f"{vendor_id}:{amount_minor}"


async def _issue_token(redis, vendor_id: str, amount_minor: int) -> str:
    token = uuid.uuid4().hex
    await redis.set(
        token_key(token),
        _token_value(vendor_id, amount_minor),
        ex=settings.reconciliation_token_ttl_seconds,
    )
    return token


def manual_batch_id(now: datetime) -> str:
    now = ensure_utc(now)
    return f"manual_payout_{now.date().isoformat()}_fixed_{int(now.timestamp() * 1000)}"


async def _plan(db: AsyncSession, vendor_id: str, amount_minor: int, batch_id: Optional[str], actor: str):
    """FIFO consumption plan: (entries to append, narrative logs)."""
    locked = await BatchProcessor.in_flight_entry_ids(db, vendor_id)
    lots = await LedgerStore.open_lots(db, vendor_id, LedgerEntryType.CREDIT_ELIGIBLE, exclude_ids=locked)
    available = sum(lot.open_amount_minor for lot in lots)

    logs: List[str] = [
        f"Vendor {vendor_id}: {len(lots)} open eligible entries totalling {available}",
        f"Requested manual payout of {amount_minor}",
    ]
    if locked:
        logs.append(f"Skipped {len(locked)} entries locked by in-flight transfers")
    if available < amount_minor:
        logs.append(f"Insufficient eligible balance: short by {amount_minor - available}")
        raise InsufficientBalanceError(vendor_id, amount_minor, available, logs)

    entries = []
    remaining = amount_minor
    for lot in lots:
        if remaining == 0:
            break
        entry = lot.entry
        take = min(lot.open_amount_minor, remaining)
        common = dict(
            vendor_id=vendor_id,
            currency=entry.currency,
            source=entry.source,
            order_ref=entry.order_ref,
            event_id=entry.event_id,
            target_payout_at=entry.target_payout_at,
            target_payout_key=entry.target_payout_key,
            created_by=actor,
        )
        entries.append(DebitPayoutEntry(
            **common,
            amount_minor=take,
            consumes_entry_id=entry.id,
            payout_batch_id=batch_id or "pending",
            note="Manual payout",
        ))
        if take == lot.open_amount_minor:
            logs.append(f"Entry {entry.id}: paid {take} in full")
        else:
            carried = lot.open_amount_minor - take
            entries.append(CreditEligibleEntry(
                **common,
                amount_minor=carried,
                split_from_entry_id=entry.id,
                note=f"Remainder of entry {entry.id} after manual payout",
            ))
            logs.append(
                f"Entry {entry.id}: paid {take} of {lot.open_amount_minor}, "
                f"{carried} carried to cycle {entry.target_payout_key}"
            )
        remaining -= take

    logs.append(f"Eligible balance after payout: {available - amount_minor}")
    return entries, logs


async def reconcile_manual_payout(
    db: AsyncSession,
    redis,
    vendor_id: str,
    amount_minor: int,
    idempotency_token: Optional[str] = None,
    dry_run: bool = False,
    actor: str = "system",
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """
    Mark ``amount_minor`` of a vendor's eligible credit as paid, oldest first.

    Raises:
        InsufficientBalanceError: open eligible credit below the amount
        LedgerValidationError: commit without a token, with a token no dry run
            issued for this vendor and amount, or a token reused for
            different parameters
        ConcurrencyConflictError: vendor lease held elsewhere
    """
    now = ensure_utc(now) if now else utc_now()
    if amount_minor <= 0:
        raise LedgerValidationError("amount_minor must be positive", details={"amount_minor": amount_minor})

    if dry_run:
        _, logs = await _plan(db, vendor_id, amount_minor, None, actor)
        token = await _issue_token(redis, vendor_id, amount_minor)
        return ReconciliationResult(
            success=True,
            message=f"Dry run: {amount_minor} can be reconciled for vendor {vendor_id}",
            logs=logs,
            idempotency_token=token,
            dry_run=True,
        )

    if not idempotency_token:
        raise LedgerValidationError("Commit requires the idempotency_token returned by the dry run")

    async with VendorLease(redis, vendor_id):
        previous = await db.get(ManualReconciliation, idempotency_token)
        if previous is not None:
            if previous.vendor_id != vendor_id or previous.amount_minor != amount_minor:
                raise LedgerValidationError(
                    "Idempotency token already used with different parameters",
                    details={"idempotency_token": idempotency_token}
                )
            return ReconciliationResult(
                success=True,
                message="Already reconciled",
                logs=list(previous.logs),
                batch_id=previous.batch_id,
                idempotency_token=idempotency_token,
            )

        issued = await redis.get(token_key(idempotency_token))
        if issued != _token_value(vendor_id, amount_minor):
            raise LedgerValidationError(
                "Idempotency token was not issued by a dry run for this vendor and amount, or has expired",
                details={"idempotency_token": idempotency_token}
            )

        batch_id = manual_batch_id(now)
        entries, logs = await _plan(db, vendor_id, amount_minor, batch_id, actor)
        await LedgerStore.append_many(db, entries, now=now)
        logs.append(f"Recorded under batch {batch_id}")

        db.add(ManualReconciliation(
            idempotency_token=idempotency_token,
            vendor_id=vendor_id,
            amount_minor=amount_minor,
            batch_id=batch_id,
            logs=logs,
            created_by=actor,
        ))
        await db.commit()
        await redis.delete(token_key(idempotency_token))

        await log_event(
            db,
            AuditAction.MANUAL_PAYOUT_RECONCILED,
            actor=actor,
            vendor_id=vendor_id,
            metadata={"batch_id": batch_id, "amount_minor": amount_minor, "entries": len(entries)},
        )

    logger.info(
        "Manual payout reconciled",
        extra={"vendor_id": vendor_id, "batch_id": batch_id, "amount_minor": amount_minor}
    )
    return ReconciliationResult(
        success=True,
        message=f"Reconciled {amount_minor} for vendor {vendor_id}",
        logs=logs,
        batch_id=batch_id,
        idempotency_token=idempotency_token,
    )


async def backfill_payout_batch(
    db: AsyncSession,
    redis,
    vendor_id: str,
    amount_minor: int,
    batch_id: str,
    actor: str = "system",
) -> BackfillResult:
    """
    Create or update the batch record of a manual payout.

    Raises:
        ResourceNotFoundError: unknown vendor
        LedgerValidationError: batch id belongs to another vendor
        ConcurrencyConflictError: vendor lease held elsewhere
    """
    account = await db.get(VendorAccount, vendor_id)
    if account is None:
        raise ResourceNotFoundError("Vendor", vendor_id)
    logs = [f"Vendor {vendor_id} found, currency {account.currency}"]

    async with VendorLease(redis, vendor_id):
        batch = await db.get(PayoutBatch, batch_id)
        if batch is not None and batch.vendor_id != vendor_id:
            raise LedgerValidationError(
                f"Batch {batch_id} belongs to another vendor",
                details={"batch_id": batch_id}
            )
        created = batch is None
        if created:
            batch = PayoutBatch(batch_id=batch_id, vendor_id=vendor_id)
            db.add(batch)
            logs.append(f"Creating batch {batch_id}")
        else:
            logs.append(
                f"Batch {batch_id} already exists with {batch.total_amount_minor}; overwriting"
            )

        batch.vendor_name = account.display_name
        batch.total_amount_minor = amount_minor
        batch.gross_amount_minor = amount_minor
        batch.fee_minor = 0
        batch.currency = account.currency
        batch.status = PayoutBatchStatus.COMPLETED
        batch.origin = PayoutBatchOrigin.MANUAL
        batch.transfer_code = MANUAL_TRANSFER_CODE
        await db.commit()
        await db.refresh(batch)
        logs.append(f"Recorded {amount_minor} {account.currency} as a completed manual payout")

        await log_event(
            db,
            AuditAction.PAYOUT_BATCH_BACKFILLED,
            actor=actor,
            vendor_id=vendor_id,
            metadata={"batch_id": batch_id, "amount_minor": amount_minor, "created": created},
        )

    logger.info("Payout batch backfilled", extra={"vendor_id": vendor_id, "batch_id": batch_id, "created": created})
    return BackfillResult(
        success=True,
        message=f"Batch {batch_id} {'created' if created else 'updated'}",
        logs=logs,
        batch_id=batch_id,
        created=created,
        batch=PayoutBatchResponse.model_validate(batch),
    )
