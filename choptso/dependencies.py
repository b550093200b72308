"""
Dependency injection for FastAPI routes.

ServiceContainer wires the document store, cache, subscription registry and
services together. One container lives on ``app.state.container``; routes
receive services through the ``get_*`` dependencies, which tests can
override:

    app.dependency_overrides[get_container] = lambda: test_container
"""

from fastapi import Depends, Request

from choptso.config import Settings, settings as default_settings
from choptso.core.cache import CacheBackend
from choptso.core.logging_config import get_logger
from choptso.core.retry import RetryPolicy
from choptso.db.memory import InMemoryDocumentStore
from choptso.db.mongodb import MongoDocumentStore
from choptso.db.store import DocumentStore
from choptso.services.connection_manager import ConnectionManager
from choptso.services.conversation_service import ConversationService
from choptso.services.message_store import MessageStore
from choptso.services.presence_service import PresenceService
from choptso.services.receipts import ReceiptService
from choptso.services.reconciler import ConversationReconciler
from choptso.services.subscriptions import SubscriptionRegistry
from choptso.services.typing_tracker import TypingTracker

logger = get_logger(__name__)


def build_store(config: Settings) -> DocumentStore:
    if config.STORE_BACKEND == "memory":
        return InMemoryDocumentStore()
    if config.STORE_BACKEND == "mongodb":
        return MongoDocumentStore(config.MONGODB_URL, config.DATABASE_NAME)
    raise ValueError(f"Unknown STORE_BACKEND: {config.STORE_BACKEND}")


class ServiceContainer:
    """Owns every long-lived collaborator of the application."""

    def __init__(self, config: Settings = None, store: DocumentStore = None):
        self.config = config or default_settings
        self.store = store or build_store(self.config)
        self.cache = CacheBackend(self.config.REDIS_URL)
        self.retry = RetryPolicy(
            timeout_seconds=self.config.WRITE_TIMEOUT_SECONDS,
            max_attempts=self.config.WRITE_MAX_ATTEMPTS,
            backoff_base_seconds=self.config.WRITE_BACKOFF_BASE_SECONDS,
        )
        self.registry = SubscriptionRegistry()
        self.manager = ConnectionManager()

        self.conversations = ConversationService(
            self.store, self.cache, self.retry, cache_ttl=self.config.CONVERSATION_CACHE_TTL
        )
        self.messages = MessageStore(
            self.store, self.conversations, self.retry, page_size_max=self.config.PAGE_SIZE_MAX
        )
        self.reconciler = ConversationReconciler(
            self.store,
            self.registry,
            window_size=self.config.LIVE_WINDOW_SIZE,
            reconnect_grace_seconds=self.config.RECONNECT_GRACE_SECONDS,
            backoff_base_seconds=self.config.RECONNECT_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=self.config.RECONNECT_BACKOFF_MAX_SECONDS,
        )
        self.receipts = ReceiptService(self.store, self.conversations, self.registry, self.retry)
        self.typing = TypingTracker(
            self.store,
            self.conversations,
            self.reconciler,
            self.retry,
            timeout_ms=self.config.TYPING_TIMEOUT_MS,
            debounce_ms=self.config.TYPING_WRITE_DEBOUNCE_MS,
        )
        self.presence = PresenceService(self.store, self.reconciler, self.retry)

    async def start(self) -> None:
        if isinstance(self.store, MongoDocumentStore):
            await self.store.connect()
        await self.cache.initialize()
        logger.info(
            "services_started",
            store_backend=type(self.store).__name__,
            cache_enabled=self.cache.enabled,
        )

    async def close(self) -> None:
        await self.manager.shutdown_all()
        self.typing.close()
        await self.registry.close()
        await self.cache.close()
        await self.store.close()
        logger.info("services_stopped")


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_message_store(container: ServiceContainer = Depends(get_container)) -> MessageStore:
    return container.messages


def get_conversation_service(container: ServiceContainer = Depends(get_container)) -> ConversationService:
    return container.conversations


def get_receipt_service(container: ServiceContainer = Depends(get_container)) -> ReceiptService:
    return container.receipts


def get_typing_tracker(container: ServiceContainer = Depends(get_container)) -> TypingTracker:
    return container.typing


def get_presence_service(container: ServiceContainer = Depends(get_container)) -> PresenceService:
    return container.presence
