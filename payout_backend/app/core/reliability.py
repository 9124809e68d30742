"""
Reliability Utilities.

Circuit Breaker for the bank-transfer provider and retry-with-backoff
for transient dispatch and store errors.
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Any, Tuple, Type

logger = logging.getLogger("payouts.reliability")


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' failures occur within 'reset_timeout',
    the circuit opens and rejects calls for 'reset_timeout' seconds.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED" # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
            if self.state == "HALF_OPEN":
                self.reset_state()
            return result
        except Exception:
            self.record_failure()
            raise

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.failures >= self.failure_threshold:
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Any:
    """
    Await ``func()`` retrying on ``retry_on`` with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. After ``retries`` extra attempts the last
    exception is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except retry_on as exc:
            attempt += 1
            if attempt > retries:
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(
                "Retrying after transient error",
                extra={"attempt": attempt, "delay_s": delay, "error": str(exc)}
            )
            await asyncio.sleep(delay)


# Global instance for bank-transfer provider calls
bank_circuit_breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60)
