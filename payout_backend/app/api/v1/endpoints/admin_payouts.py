"""
Admin Payout API Endpoints.

Manual reconciliation, batch backfill, payout runs and diagnostics.
"""

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from typing import List, Optional

from payout_backend.app.db.session import get_db
from payout_backend.app.core.dependencies import get_actor
from payout_backend.app.core.redis_client import get_redis
from payout_backend.app.domain.payouts.batch_processor import BatchProcessor
from payout_backend.app.domain.payouts.eligibility import EligibilityEngine
from payout_backend.app.domain.payouts.reconciliation import backfill_payout_batch, reconcile_manual_payout
from payout_backend.app.domain.wallet.projector import WalletSummaryProjector
from payout_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from payout_backend.app.models.payout_transfer import PayoutTransfer
from payout_backend.app.models.wallet_enums import LedgerSource, TransferStatus
from payout_backend.app.schemas.payout import (
    AuditLogResponse,
    AuditTrailResponse,
    BackfillPayoutBatchRequest,
    BackfillResult,
    ConsistencyReport,
    DLQItemResponse,
    PayoutBatchResponse,
    PayoutRunRequest,
    PayoutRunResult,
    PromotionResult,
    ReconcileManualPayoutRequest,
    ReconciliationResult,
    TransferResponse,
    UpcomingPayoutResponse,
)
from payout_backend.app.services.audit import get_audit_trail
from payout_backend.app.services.bank_transfer import get_bank_client

router = APIRouter(prefix="/admin/payouts", tags=["Admin - Payouts"])


@router.post("/reconcile", response_model=ReconciliationResult)
async def reconcile_payout(
    request: ReconcileManualPayoutRequest,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Mark part of a vendor's eligible balance as paid out of band.

    Send ``dry_run=true`` first; commit with the returned idempotency token.
    """
    return await reconcile_manual_payout(
        db,
        redis,
        vendor_id=request.vendor_id,
        amount_minor=request.amount_minor,
        idempotency_token=request.idempotency_token,
        dry_run=request.dry_run,
        actor=actor,
    )


@router.post("/batches/backfill", response_model=BackfillResult)
async def backfill_batch(
    request: BackfillPayoutBatchRequest,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Create or update the batch record of a manual payout."""
    return await backfill_payout_batch(
        db, redis, request.vendor_id, request.amount_minor, request.batch_id, actor=actor
    )


@router.get("/upcoming/{vendor_id}", response_model=UpcomingPayoutResponse)
async def upcoming_payout(
    vendor_id: str = Path(..., min_length=1),
    source: Optional[LedgerSource] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """What the vendor's next payout will contain."""
    return await WalletSummaryProjector.get_upcoming_payout(db, vendor_id, source=source)


@router.get("/consistency/{vendor_id}", response_model=ConsistencyReport)
async def consistency_check(
    vendor_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Compare the wallet projection with the ledger. Reports only."""
    return await WalletSummaryProjector.check_consistency(db, vendor_id)


@router.post("/run", response_model=PayoutRunResult)
async def run_payout_cycle(
    request: PayoutRunRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    bank_client=Depends(get_bank_client),
):
    """Run (or preview with ``dry_run``) one vendor's payout cycle."""
    return await BatchProcessor.run_cycle(
        db, redis, bank_client, request.vendor_id, cycle_key=request.cycle_key, dry_run=request.dry_run
    )


@router.post("/promote", response_model=List[PromotionResult])
async def promote_holds(
    vendor_id: Optional[str] = Query(None, min_length=1),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Promote due holds for one vendor, or sweep every vendor."""
    if vendor_id:
        return [await EligibilityEngine.promote_due_holds(db, redis, vendor_id)]
    return await EligibilityEngine.sweep(db, redis)


@router.post("/transfers/resolve", response_model=List[PayoutRunResult])
async def resolve_transfers(
    vendor_id: Optional[str] = Query(None, min_length=1),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    bank_client=Depends(get_bank_client),
):
    """Poll in-flight transfers and settle or fail them."""
    if vendor_id:
        return await BatchProcessor.resolve_in_flight(db, redis, bank_client, vendor_id)
    return await BatchProcessor.resolve_all_in_flight(db, redis, bank_client)


@router.get("/transfers", response_model=List[TransferResponse])
async def list_transfers(
    vendor_id: Optional[str] = Query(None, min_length=1),
    status_filter: Optional[TransferStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Dispatch attempts, newest first. In-flight ones still lock their entries."""
    query = select(PayoutTransfer).order_by(desc(PayoutTransfer.created_at), desc(PayoutTransfer.id))
    if vendor_id:
        query = query.where(PayoutTransfer.vendor_id == vendor_id)
    if status_filter:
        query = query.where(PayoutTransfer.status == status_filter)
    result = await db.execute(query.limit(limit))
    return result.scalars().all()


@router.get("/dlq", response_model=List[DLQItemResponse])
async def list_dead_letters(
    status_filter: Optional[DLQStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List escalated payout cycles, newest first."""
    query = select(DeadLetterQueue).order_by(desc(DeadLetterQueue.created_at), desc(DeadLetterQueue.id))
    if status_filter:
        query = query.where(DeadLetterQueue.status == status_filter)
    result = await db.execute(query.limit(limit))
    return result.scalars().all()


@router.post("/dlq/{dlq_id}/retry", response_model=PayoutRunResult, status_code=status.HTTP_200_OK)
async def retry_dead_letter(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    bank_client=Depends(get_bank_client),
):
    """Re-run an escalated payout cycle."""
    return await BatchProcessor.retry_dead_letter(db, redis, bank_client, dlq_id)


@router.get("/audit-logs", response_model=AuditTrailResponse)
async def get_audit_logs(
    vendor_id: Optional[str] = Query(None, description="Filter by vendor"),
    action: Optional[str] = Query(None, description="Filter by action type"),
    limit: int = Query(100, ge=1, le=500, description="Maximum records to return"),
    db: AsyncSession = Depends(get_db),
):
    """
    Get audit trail with optional filtering.

    Returns recent payout and admin actions for review.
    """
    logs = await get_audit_trail(db=db, vendor_id=vendor_id, action=action, limit=limit)

    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=len(logs)
    )
