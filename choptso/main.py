from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from choptso.config import settings
from choptso.core.logging_config import setup_logging, get_logger
from choptso.core.exceptions import ChatError, chat_error_handler
from choptso.core.rate_limit import limiter
from choptso.dependencies import ServiceContainer
from choptso.middleware.access_log import AccessLogMiddleware, RequestContextMiddleware
from choptso.routes import conversations, messages, ops, presence, websocket

# Setup structured logging BEFORE any other imports that might log
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "application_startup",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        store_backend=settings.STORE_BACKEND,
        log_level=settings.LOG_LEVEL,
    )

    container = ServiceContainer()
    try:
        await container.start()
    except Exception as e:
        logger.error(
            "store_initialization_failed",
            error=str(e),
            store_backend=settings.STORE_BACKEND,
            exc_info=True,
        )
        raise
    app.state.container = container

    yield

    logger.info("application_shutdown")
    # Closes WebSockets, cancels subscriptions, then releases connections
    await container.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.APP_VERSION,
    description="""
**Message synchronization API: live conversation views over a document store change feed.**

## Key Features
- **Live views**: WebSocket snapshots of the newest messages, reconciled from change batches
- **Receipts**: per-recipient delivered/read state with an aggregate indicator for senders
- **Typing & presence**: typing sets that expire after 3 s without renewal, user status
- **Tombstones**: deleted messages are never physically removed

## Security
- JWT Bearer (HS256) required for all endpoints; `chat:admin` scope grants moderation
    """,
    docs_url="/docs" if settings.ENABLE_DOCS else None,
    redoc_url="/redoc" if settings.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if settings.ENABLE_DOCS else None,
    lifespan=lifespan
)

app.add_exception_handler(ChatError, chat_error_handler)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_group_untemplated=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, endpoint="/metrics")

# Middleware executes in REVERSE order of registration:
# RequestContextMiddleware -> AccessLogMiddleware -> CORSMiddleware -> route
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)
app.add_middleware(AccessLogMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(ops.router, tags=["operations"])
app.include_router(conversations.router, prefix=settings.API_PREFIX, tags=["conversations"])
app.include_router(messages.router, prefix=settings.API_PREFIX, tags=["messages"])
app.include_router(presence.router, prefix=settings.API_PREFIX, tags=["presence"])
app.include_router(websocket.router, prefix=settings.API_PREFIX, tags=["websocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "choptso.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=False,  # AccessLogMiddleware replaces it
    )
