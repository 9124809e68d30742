"""
Per-vendor lease using Redis.

Serializes money-moving operations (promotion, payout runs, manual
reconciliation, earnings intake) for one vendor. The lease expires on
its own so a crashed worker cannot block a vendor forever.
"""

import logging
import uuid
from typing import Optional

from payout_backend.app.core.config import settings
from payout_backend.app.core.exceptions import ConcurrencyConflictError

logger = logging.getLogger("payouts.lease")

# Redis key prefix for vendor leases
VENDOR_LEASE_PREFIX = "lease:vendor:"


def lease_key(vendor_id: str) -> str:
    return f"{VENDOR_LEASE_PREFIX}{vendor_id}"


class VendorLease:
    """
    Async context manager holding one vendor's lease.

    Usage:
        async with VendorLease(redis, vendor_id):
            ...  # mutate the vendor's ledger

    Raises:
        ConcurrencyConflictError: if another holder owns the lease
    """

    def __init__(self, redis, vendor_id: str, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.vendor_id = vendor_id
        self.ttl_seconds = ttl_seconds or settings.vendor_lease_ttl_seconds
        self.token = uuid.uuid4().hex
        self.acquired = False

    async def acquire(self) -> "VendorLease":
        ok = await self.redis.set(lease_key(self.vendor_id), self.token, nx=True, ex=self.ttl_seconds)
        if not ok:
            logger.info("Vendor lease busy", extra={"vendor_id": self.vendor_id})
            raise ConcurrencyConflictError(self.vendor_id)
        self.acquired = True
        return self

    async def release(self) -> bool:
        """Release the lease if this holder still owns it."""
        if not self.acquired:
            return False
        self.acquired = False
        key = lease_key(self.vendor_id)
        # Not atomic; the TTL must exceed the longest leased operation.
        current = await self.redis.get(key)
        if current != self.token:
            logger.warning("Vendor lease expired before release", extra={"vendor_id": self.vendor_id})
            return False
        await self.redis.delete(key)
        return True

    async def __aenter__(self) -> "VendorLease":
        return await self.acquire()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


async def is_vendor_locked(redis, vendor_id: str) -> bool:
    """Check whether any holder currently owns the vendor's lease."""
    return await redis.exists(lease_key(vendor_id)) > 0
