"""
Order Event API Endpoints.

Intake of settled and refunded orders from the checkout flow.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from payout_backend.app.db.session import get_db
from payout_backend.app.core.redis_client import get_redis
from payout_backend.app.domain.wallet.earnings import record_order_settlement, record_refund
from payout_backend.app.schemas.ledger import LedgerEntryResponse, OrderRefundedEvent, OrderSettledEvent

router = APIRouter(prefix="/events/orders", tags=["Order Events"])


@router.post("/settled", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def order_settled(
    event: OrderSettledEvent,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Record a vendor's share of a paid order (on hold by default)."""
    return await record_order_settlement(db, redis, event)


@router.post("/refunded", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def order_refunded(
    event: OrderRefundedEvent,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Debit a refund against the entry the order produced."""
    return await record_refund(db, redis, event)
