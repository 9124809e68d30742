"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, List, Optional

logger = logging.getLogger("payouts.errors")


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class LedgerValidationError(AppException):
    """Malformed ledger entry. Nothing is written."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_LEDGER_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class InsufficientBalanceError(AppException):
    """Requested amount exceeds the vendor's open eligible balance."""

    def __init__(self, vendor_id: str, requested_minor: int, available_minor: int,
                 logs: Optional[List[str]] = None):
        self.requested_minor = requested_minor
        self.available_minor = available_minor
        super().__init__(
            message=(
                f"Vendor {vendor_id} has {available_minor} eligible, "
                f"{requested_minor} requested"
            ),
            error_code="ERR_INSUFFICIENT_BALANCE",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "vendor_id": vendor_id,
                "requested_minor": requested_minor,
                "available_minor": available_minor,
                "logs": logs or [],
            }
        )


class ConcurrencyConflictError(AppException):
    """Another worker holds the vendor lease. Retry later."""

    def __init__(self, vendor_id: str):
        super().__init__(
            message=f"Vendor {vendor_id} is locked by another operation",
            error_code="ERR_VENDOR_LOCKED",
            status_code=status.HTTP_409_CONFLICT,
            details={"vendor_id": vendor_id}
        )


class ProviderAmbiguousError(AppException):
    """Transfer outcome unknown. The transfer stays in flight until resolved."""

    def __init__(self, reference: str, reason: str = "Transfer outcome unknown"):
        self.reference = reference
        super().__init__(
            message=f"{reason} (reference {reference})",
            error_code="ERR_PROVIDER_AMBIGUOUS",
            status_code=status.HTTP_202_ACCEPTED,
            details={"reference": reference}
        )


class ConsistencyMismatchError(AppException):
    """Wallet projection and ledger disagree. Reported, never auto-healed."""

    def __init__(self, vendor_id: str, diff_minor: int, details: Dict[str, Any] = None):
        self.diff_minor = diff_minor
        super().__init__(
            message=f"Wallet for vendor {vendor_id} is out of balance by {diff_minor}",
            error_code="ERR_CONSISTENCY_MISMATCH",
            status_code=status.HTTP_409_CONFLICT,
            details={"vendor_id": vendor_id, "diff_minor": diff_minor, **(details or {})}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
