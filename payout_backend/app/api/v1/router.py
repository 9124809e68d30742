"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from payout_backend.app.api.v1.endpoints import (
    admin_payouts, vendor_wallet, order_events, transfer_webhooks
)

router = APIRouter()

# Admin payout operations and diagnostics
router.include_router(admin_payouts.router)

# Vendor wallet, schedule and bank account
router.include_router(vendor_wallet.router)

# Upstream order events
router.include_router(order_events.router)

# Bank-transfer provider callbacks
router.include_router(transfer_webhooks.router)
