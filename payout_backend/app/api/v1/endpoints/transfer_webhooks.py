"""
Transfer Webhook Endpoint.

Provider callbacks reporting the final outcome of a payout transfer.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from payout_backend.app.db.session import get_db
from payout_backend.app.core.redis_client import get_redis
from payout_backend.app.domain.payouts.batch_processor import BatchProcessor
from payout_backend.app.schemas.payout import PayoutRunResult, TransferWebhook

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/transfers", response_model=PayoutRunResult)
async def transfer_callback(
    payload: TransferWebhook,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Settle or fail the transfer the callback refers to. Repeats are no-ops."""
    return await BatchProcessor.apply_transfer_outcome(db, redis, payload.reference, payload.status)
