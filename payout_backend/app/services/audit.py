"""
Audit logging service for money-moving operations and admin actions.

Provides centralized logging for compliance and payout review.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from payout_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    PAYOUT_SCHEDULE_CHANGED = "PAYOUT_SCHEDULE_CHANGED"

    # Bank accounts
    BANK_ACCOUNT_UPDATED = "BANK_ACCOUNT_UPDATED"
    BANK_ACCOUNT_VERIFIED = "BANK_ACCOUNT_VERIFIED"

    # Automated payouts
    PAYOUT_SETTLED = "PAYOUT_SETTLED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    PAYOUT_AMBIGUOUS = "PAYOUT_AMBIGUOUS"

    # Manual corrections
    MANUAL_PAYOUT_RECONCILED = "MANUAL_PAYOUT_RECONCILED"
    PAYOUT_BATCH_BACKFILLED = "PAYOUT_BATCH_BACKFILLED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor: str = "system",
    vendor_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Log a payout or admin event to the audit log.

    Commits the session, so call it after the audited change is complete.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor: Who performed the action ("system" for the worker)
        vendor_id: Vendor whose wallet was affected
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor=actor or "system",
        action=action,
        vendor_id=vendor_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    vendor_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if vendor_id:
        query = query.where(AuditLog.vendor_id == vendor_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
