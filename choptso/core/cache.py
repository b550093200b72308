"""
Redis cache for conversation lookups.

Participant sets never change after a conversation is created, so lookups
are cached as JSON under ``conversation:{id}``. Redis is optional: without
``REDIS_URL``, or while Redis fails, every read is a miss and every write a
no-op, and the document store answers instead.

Usage:
    cached = await cache.get_json("conversation:dm:alice:bob")
    if cached is None:
        doc = await store.get("conversations", "dm:alice:bob")
        await cache.set_json("conversation:dm:alice:bob", doc, ttl=300)
"""

import json
from typing import Any, Awaitable, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from choptso.core.logging_config import get_logger
from choptso.core import metrics

logger = get_logger(__name__)

_FAILED = object()


class CacheBackend:
    """Best-effort Redis cache; failures degrade to cache misses."""

    def __init__(self, redis_url: str = ""):
        self.redis_url = redis_url
        self.redis: Optional[aioredis.Redis] = None
        self.enabled = False

    async def initialize(self) -> None:
        if not self.redis_url:
            logger.info("cache_disabled", reason="no_redis_url_configured")
            return

        self.redis = aioredis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
        try:
            await self.redis.ping()
        except (RedisError, OSError) as e:
            logger.warning("cache_initialization_failed", error=str(e))
            return
        self.enabled = True
        logger.info("cache_enabled", redis_url=self.redis_url)

    async def close(self) -> None:
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except (RedisError, OSError) as e:
                logger.warning("cache_close_failed", error=str(e))
            self.redis = None
        self.enabled = False

    async def _call(self, operation: str, key: str, call: Callable[[], Awaitable[Any]], default: Any) -> Any:
        if not self.enabled:
            return default
        try:
            return await call()
        except (RedisError, OSError) as e:
            metrics.cache_requests_total.labels(operation=operation, result="error").inc()
            logger.warning("cache_operation_failed", operation=operation, key=key, error=str(e))
            return default

    async def get_json(self, key: str) -> Optional[Any]:
        """Decoded value, or None on a miss, a disabled cache or a Redis error."""
        raw = await self._call("get", key, lambda: self.redis.get(key), _FAILED)
        if raw is _FAILED or not self.enabled:
            return None
        metrics.cache_requests_total.labels(
            operation="get", result="miss" if raw is None else "hit"
        ).inc()
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl: int = 300) -> bool:
        payload = json.dumps(value, default=str)  # datetimes as ISO strings
        return await self._call(
            "set", key, lambda: self._setex(key, ttl, payload), False
        )

    async def _setex(self, key: str, ttl: int, payload: str) -> bool:
        await self.redis.setex(key, ttl, payload)
        return True

    async def delete(self, key: str) -> bool:
        deleted = await self._call("delete", key, lambda: self.redis.delete(key), 0)
        return bool(deleted)
