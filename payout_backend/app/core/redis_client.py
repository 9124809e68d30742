"""
Redis client initialization and connection management.

Redis holds the per-vendor leases that serialize money-moving operations,
so a lost connection blocks payouts rather than letting them race.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError
from payout_backend.app.core.config import settings

logger = logging.getLogger("payouts.redis")

# Lease commands must fail fast instead of stalling a payout run
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
    socket_timeout=settings.redis_socket_timeout_seconds,
    socket_connect_timeout=settings.redis_socket_timeout_seconds,
)


async def get_redis():
    """FastAPI dependency returning the shared lease client."""
    return redis_client


async def ping_redis(client) -> bool:
    """
    Check that the lease store answers.

    Returns:
        True if the ping succeeded, False when Redis is unreachable
    """
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed", extra={"error": str(e)})
        return False
