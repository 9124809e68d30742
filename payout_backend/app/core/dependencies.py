"""
Request dependencies for FastAPI.

Callers identify themselves with an ``X-Actor-Id`` header; the value is
recorded on audit logs and on ledger entries written by admin actions.
"""

from typing import Optional
from fastapi import Header


async def get_actor(x_actor_id: Optional[str] = Header(None, max_length=128)) -> str:
    """
    FastAPI dependency resolving who is performing the request.

    Returns:
        The ``X-Actor-Id`` header value, or "system" when absent
    """
    if x_actor_id and x_actor_id.strip():
        return x_actor_id.strip()
    return "system"
