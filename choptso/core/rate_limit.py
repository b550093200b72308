"""
Rate limiting for API endpoints (slowapi).

- Default: 100 requests/minute
- Message creation: 20 requests/minute
- Typing updates: 120 requests/minute (clients send one per keystroke burst)
- Health check: not limited

Limits are keyed by user id (set on request.state by RequestContextMiddleware)
and fall back to the client IP.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
from typing import Optional


def get_user_identifier(request: Request) -> str:
    user_id: Optional[str] = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_user_identifier,
    default_limits=["100/minute"],
    storage_uri="memory://",
    strategy="fixed-window",
)
