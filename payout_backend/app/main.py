"""
FastAPI Application Entry Point.

This is the main application file for the Vendor Payouts Backend.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from payout_backend.app.core.config import settings
from payout_backend.app.api.v1.router import router as api_v1_router
from payout_backend.app.core.observability import ObservabilityMiddleware, configure_logging
from payout_backend.app.core.redis_client import redis_client, get_redis, ping_redis
from payout_backend.app.db.session import engine, Base
from payout_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from payout_backend.app.services.bank_transfer import bank_client
from payout_backend.app.services.payout_worker import run_forever
from fastapi import HTTPException

# Import models to ensure they are registered with Base
from payout_backend.app.models.vendor_account import VendorAccount
from payout_backend.app.models.ledger_entry import LedgerEntry
from payout_backend.app.models.wallet_summary import WalletSummary
from payout_backend.app.models.payout_schedule import PayoutSchedule
from payout_backend.app.models.bank_account import BankAccount
from payout_backend.app.models.payout_batch import PayoutBatch
from payout_backend.app.models.payout_transfer import PayoutTransfer
from payout_backend.app.models.manual_reconciliation import ManualReconciliation
from payout_backend.app.models.audit_log import AuditLog
from payout_backend.app.models.dlq import DeadLetterQueue

configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the payout worker when enabled and stops it on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    worker = None
    if settings.payout_worker_enabled:
        worker = asyncio.create_task(run_forever(redis_client, bank_client))
    yield
    if worker is not None:
        worker.cancel()
        with suppress(asyncio.CancelledError):
            await worker

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Vendor wallet ledger and payout engine",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check(redis=Depends(get_redis)):
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and lease store reachability
    """
    redis_ok = await ping_redis(redis)
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "ok" if redis_ok else "unavailable",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Vendor Payouts Backend API",
        "docs": "/docs",
        "health": "/health",
    }
