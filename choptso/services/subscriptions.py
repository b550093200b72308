"""
Subscription registry.

Every live listener (conversation view, typing map, presence document) is a
Subscription owned by a SubscriptionRegistry. The registry is an explicit
object held by the service container, so independent instances (tests,
multiple apps in one process) never share state.

Creation registers, ``unsubscribe()`` removes. Two subscriptions to the same
target are independent: cancelling one never touches the other.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from choptso.core.logging_config import get_logger
from choptso.core import metrics

logger = get_logger(__name__)


class Subscription:
    """Handle for one live listener. ``unsubscribe()`` is idempotent."""

    def __init__(self, registry: "SubscriptionRegistry", kind: str, target: str):
        self.id = f"{kind}:{target}:{uuid.uuid4().hex[:12]}"
        self.kind = kind
        self.target = target
        self.created_at = datetime.now(timezone.utc)
        self.view = None  # ConversationView for conversation subscriptions
        self.ready = asyncio.Event()  # set once the initial state is delivered
        self._registry = registry
        self._task: Optional[asyncio.Task] = None
        self._cleanups: List[Callable[[], None]] = []
        self.active = True

    def attach_task(self, task: asyncio.Task) -> None:
        self._task = task

    def on_close(self, cleanup: Callable[[], None]) -> None:
        """Register a callback run exactly once when the subscription ends."""
        self._cleanups.append(cleanup)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        current = asyncio.current_task() if self._task is not None else None
        if self._task is not None and self._task is not current and not self._task.done():
            self._task.cancel()
        for cleanup in self._cleanups:
            cleanup()
        self._cleanups.clear()
        self._registry.unregister(self)

    async def aclose(self) -> None:
        """Unsubscribe and wait for the listener task to finish."""
        self.unsubscribe()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    def describe(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "target": self.target,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<Subscription {self.id} active={self.active}>"


class SubscriptionRegistry:
    """Process-level bookkeeping of live subscriptions."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    def create(self, kind: str, target: str) -> Subscription:
        subscription = Subscription(self, kind, target)
        self._subscriptions[subscription.id] = subscription
        metrics.subscriptions_active.labels(kind=kind).inc()
        logger.debug("subscription_registered", subscription_id=subscription.id)
        return subscription

    def unregister(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            metrics.subscriptions_active.labels(kind=subscription.kind).dec()
            logger.debug("subscription_unregistered", subscription_id=subscription.id)

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def list(self) -> List[dict]:
        return [sub.describe() for sub in self._subscriptions.values()]

    @property
    def count(self) -> int:
        return len(self._subscriptions)

    def views_for(self, conversation_id: str) -> list:
        """Live ConversationViews of a conversation, one per subscription."""
        return [
            sub.view
            for sub in self._subscriptions.values()
            if sub.kind == "conversation" and sub.target == conversation_id and sub.view is not None
        ]

    def unsubscribe_all(self) -> int:
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.unsubscribe()
        if subscriptions:
            logger.info("subscriptions_cleared", count=len(subscriptions))
        return len(subscriptions)

    async def close(self) -> None:
        """Cancel every subscription and wait for their tasks."""
        subscriptions = list(self._subscriptions.values())
        await asyncio.gather(*(sub.aclose() for sub in subscriptions), return_exceptions=True)
