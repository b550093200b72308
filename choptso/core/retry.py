"""
Retry policy for remote writes.

Each attempt is bounded by a timeout. TransientError is retried with
exponential backoff (base * 2**attempt). Validation and permission failures
propagate immediately, and so does a timeout: the write may have landed, so
the caller decides whether to retry.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from choptso.core.exceptions import OperationTimeoutError, TransientError
from choptso.core.logging_config import get_logger
from choptso.core import metrics

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Timeout plus bounded exponential backoff for store writes."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return self.backoff_base_seconds * (2 ** attempt)

    async def run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``call`` under the policy.

        Args:
            operation: Name used in logs and metrics
            call: Zero-argument factory returning a fresh awaitable per attempt

        Raises:
            OperationTimeoutError: An attempt exceeded the timeout
            TransientError: Every attempt failed transiently
        """
        for attempt in range(self.max_attempts):
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                logger.warning(
                    "remote_write_timeout",
                    operation=operation,
                    attempt=attempt + 1,
                    timeout_seconds=self.timeout_seconds,
                )
                raise OperationTimeoutError(
                    f"{operation} did not complete within {self.timeout_seconds}s"
                ) from e
            except TransientError as e:
                if attempt + 1 >= self.max_attempts:
                    logger.error(
                        "remote_write_failed",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise
                delay = self.backoff(attempt)
                metrics.write_retries_total.labels(operation=operation).inc()
                logger.warning(
                    "remote_write_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    retry_in_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
