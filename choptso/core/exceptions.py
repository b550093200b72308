"""
Error taxonomy for message sync operations.

Every component failure is raised to the immediate caller. The API layer
turns them into HTTP responses through ``chat_error_handler``; components
never notify users themselves.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class ChatError(Exception):
    """Base class for all component-level failures."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(ChatError):
    """Malformed input. Never retried."""

    status_code = 422  # Unprocessable Content
    default_detail = "Validation error"


class PermissionDeniedError(ChatError, PermissionError):
    """Mutation outside the actor's rights. Never retried."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Permission denied"


class NotFoundError(ChatError):
    """Exception raised when a resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class TransientError(ChatError):
    """Store unavailable or network failure. Writes retry with backoff."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Store temporarily unavailable"


class OperationTimeoutError(ChatError, TimeoutError):
    """A write that neither succeeded nor failed within its time bound."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = "Operation timed out"


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError as ``{"detail": ..., "error": <class name>}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )
