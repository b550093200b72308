"""
Structured access log middleware.

Replaces Uvicorn's access logs with structlog events carrying a correlation
id, timing and the calling user.
"""

import time
import uuid
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import jwt
import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

from choptso.config import settings


logger = structlog.get_logger(__name__)

SLOW_REQUEST_MS = 1000


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    One ``http_request`` event per request.

    The correlation id comes from X-Correlation-ID / X-Request-ID or is
    generated, is bound to the structlog context for the whole request and
    is echoed in the response headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or str(uuid.uuid4())
        )
        bind_contextvars(correlation_id=correlation_id, request_id=correlation_id)
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        client_host = request.client.host if request.client else None
        user_id = getattr(request.state, "user_id", None)

        logger.debug("request_started", method=method, path=path, client_ip=client_host, user_id=user_id)

        response = None
        error = None
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            error = e
            logger.error(
                "request_error_unhandled",
                method=method,
                path=path,
                error_type=type(e).__name__,
                error=str(e),
                user_id=user_id,
                exc_info=True,
            )
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

            if status_code >= 500:
                log_method = logger.error
            elif status_code >= 400:
                log_method = logger.warning
            else:
                log_method = logger.info

            log_method(
                "http_request",
                method=method,
                path=path,
                query_params=str(request.url.query) or None,
                status_code=status_code,
                duration_ms=round(duration_ms, 2),
                client_ip=client_host,
                user_agent=request.headers.get("user-agent"),
                user_id=user_id,
                error_type=type(error).__name__ if error else None,
                slow_request=duration_ms > SLOW_REQUEST_MS,
            )
            clear_contextvars()

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Request-ID"] = correlation_id
        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Puts the caller's user id on request.state for access logs and rate
    limiting. Invalid tokens are ignored here; route dependencies reject them.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            try:
                payload = jwt.decode(
                    auth_header[len("Bearer "):],
                    settings.JWT_SECRET_KEY,
                    algorithms=[settings.JWT_ALGORITHM],
                )
                request.state.user_id = payload.get("sub")
            except jwt.InvalidTokenError:
                pass

        return await call_next(request)
