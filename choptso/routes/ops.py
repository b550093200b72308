from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from choptso.config import settings
from choptso.core.logging_config import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health")
async def health_check(request: Request):
    """
    Health check.

    Verifies the document store (critical) and Redis (if configured).
    Returns 200 when the store answers, 503 otherwise.
    """
    container = request.app.state.container

    checks = {
        "application": "healthy",
        "store": "unknown",
        "redis": "unknown" if settings.REDIS_URL else "not_configured",
        "change_feeds": "online" if container.reconciler.online else "interrupted",
    }

    try:
        await container.store.ping()
        checks["store"] = "healthy"
    except Exception as e:
        logger.error("health_check_store_failed", error=str(e))
        checks["store"] = f"unhealthy: {type(e).__name__}"

    if settings.REDIS_URL and container.cache.enabled:
        try:
            await container.cache.redis.ping()
            checks["redis"] = "healthy"
        except Exception as e:
            logger.error("health_check_redis_failed", error=str(e))
            checks["redis"] = f"degraded: {type(e).__name__}"

    healthy = checks["store"] == "healthy"

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "service": "choptso-sync",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "checks": checks,
            "subscriptions": container.registry.count,
        },
    )


@router.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }
