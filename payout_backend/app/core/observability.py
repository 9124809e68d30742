"""
Observability Middleware.

Adds correlation IDs and structured logging context to requests,
including the vendor a request acts on.
"""

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Configure structured logger
logger = logging.getLogger("payouts")


def configure_logging(level: str = "INFO") -> None:
    """Attach a stream handler to the ``payouts`` logger tree once."""
    logger.setLevel(level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        ))
        logger.addHandler(handler)


# /v1/vendors/{vendor_id}/... and /v1/admin/payouts/consistency/{vendor_id}
_VENDOR_PATH = re.compile(r"/(?:vendors|consistency)/(?P<vendor_id>[^/]+)")


def vendor_id_for(request: Request) -> Optional[str]:
    """Vendor a request acts on, from the matched route, the path or the query."""
    vendor_id = request.scope.get("path_params", {}).get("vendor_id")
    if vendor_id:
        return vendor_id
    match = _VENDOR_PATH.search(request.url.path)
    if match is not None:
        return match.group("vendor_id")
    return request.query_params.get("vendor_id")


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Correlation id, timing and vendor context on every request log."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = (time.perf_counter() - start_time) * 1000  # ms
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = str(process_time)

        log_data = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(process_time, 2),
            "vendor_id": vendor_id_for(request),
            "actor": request.headers.get("X-Actor-Id"),
        }

        if response.status_code >= 500:
            logger.error("Request failed", extra=log_data)
        elif response.status_code >= 400:
            logger.warning("Request rejected", extra=log_data)
        else:
            logger.info("Request served", extra=log_data)

        return response
