"""
Conversation state reconciler.

ConversationView holds the live window (newest N messages) of one
conversation and merges change batches into it:

1. removed ids are dropped
2. added/modified documents are upserted by id
3. the window is re-sorted by (created_at, id) ascending and trimmed to N

Upserts merge monotonically: read_by / delivered_to are unioned with the
local copy and a tombstone never reverts, so a stale or duplicated batch
cannot move receipts backwards. Applying the same batch twice is a no-op.

ConversationReconciler drives views from the store's change feed:

- permission-denied on the feed is terminal: on_error once, then the
  subscription stops and leaves the registry
- transient failures keep the last known view, reopen the feed with
  exponential backoff and re-read the window; on_error fires only when the
  outage outlasts the grace period

Connection state is aggregated over every followed feed: the store counts
as offline while at least one subscription is in an outage, and
on_connection_change listeners hear each transition as
{online, timestamp, active_subscriptions}.
"""

import asyncio
import inspect
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from choptso.core.exceptions import PermissionDeniedError, TransientError
from choptso.core.logging_config import PerformanceLogger, get_logger
from choptso.core import metrics
from choptso.db.store import ChangeBatch, DESCENDING, Document, DocumentStore
from choptso.models.message import COLLECTION as MESSAGES, Message
from choptso.services.subscriptions import Subscription, SubscriptionRegistry

logger = get_logger(__name__)

UpdateCallback = Callable[..., Optional[Awaitable[None]]]
ErrorCallback = Callable[[Exception], Optional[Awaitable[None]]]
ConnectionCallback = Callable[[dict], Optional[Awaitable[None]]]


def _union(first: List[str], *others: List[str]) -> List[str]:
    merged = list(first)
    for other in others:
        for item in other:
            if item not in merged:
                merged.append(item)
    return merged


def merge_message(local: Message, remote: Message) -> Message:
    """
    Merge a remote copy into the local one.

    Remote wins except for the monotonic parts: receipts are unioned
    (read implies delivered) and a local tombstone keeps its frozen body.
    """
    read_by = _union(local.read_by, remote.read_by)
    update = {
        "read_by": read_by,
        "delivered_to": _union(local.delivered_to, remote.delivered_to, read_by),
    }
    if local.deleted and not remote.deleted:
        update.update(
            deleted=True,
            deleted_at=local.deleted_at,
            body=local.body,
            edited_at=local.edited_at,
        )
    return remote.model_copy(update=update)


class ConversationView:
    """
    Ordered, deduplicated window of one conversation's messages.

    A removed record shrinks the window without pulling in an older
    message; the window refills from the store on the next reconnect.
    Messages are tombstoned rather than deleted, so removals only come from
    direct store maintenance.
    """

    def __init__(self, conversation_id: str, window_size: int = 50):
        self.conversation_id = conversation_id
        self.window_size = window_size
        self._by_id: Dict[str, Message] = {}
        self._ordered: List[Message] = []

    def __len__(self) -> int:
        return len(self._ordered)

    @property
    def messages(self) -> List[Message]:
        return list(self._ordered)

    @property
    def ids(self) -> List[str]:
        return [m.id for m in self._ordered]

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def apply(self, batch: ChangeBatch) -> None:
        for message_id in batch.removed:
            self._by_id.pop(message_id, None)

        for doc in list(batch.added) + list(batch.modified):
            if doc.get("conversation_id") != self.conversation_id:
                continue
            incoming = Message.from_document(doc)
            current = self._by_id.get(incoming.id)
            self._by_id[incoming.id] = merge_message(current, incoming) if current else incoming

        self._reorder()

    def _reorder(self) -> None:
        ordered = sorted(self._by_id.values(), key=lambda m: (m.created_at, m.id))
        if len(ordered) > self.window_size:
            for stale in ordered[:-self.window_size]:
                del self._by_id[stale.id]
            ordered = ordered[-self.window_size:]
        self._ordered = ordered

    def _acknowledge(self, user_id: str, field: str) -> int:
        changed = 0
        for message_id, message in list(self._by_id.items()):
            if not message.is_recipient(user_id) or user_id in getattr(message, field):
                continue
            update = {
                "delivered_to": _union(message.delivered_to, [user_id]),
            }
            if field == "read_by":
                update["read_by"] = _union(message.read_by, [user_id])
            self._by_id[message_id] = message.model_copy(update=update)
            changed += 1
        if changed:
            self._reorder()
        return changed

    def acknowledge_read(self, reader_id: str) -> int:
        """Apply a successful mark-read locally. Returns messages changed."""
        return self._acknowledge(reader_id, "read_by")

    def acknowledge_delivered(self, recipient_id: str) -> int:
        return self._acknowledge(recipient_id, "delivered_to")

    def unread_count(self, user_id: str) -> int:
        return sum(
            1 for m in self._ordered
            if m.is_recipient(user_id) and user_id not in m.read_by
        )


async def invoke_callback(callback: Optional[Callable], *args) -> None:
    """Call a sync or async subscriber; a failing subscriber never stops the feed."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            "subscriber_callback_failed",
            callback=getattr(callback, "__name__", repr(callback)),
            error_type=type(e).__name__,
            error=str(e),
            exc_info=True,
        )


class ConversationReconciler:
    """
    Keeps ConversationViews in sync with the store's change feed.

    Usage:
        subscription = reconciler.subscribe("dm:alice:bob", on_update)
        await subscription.ready.wait()
        ...
        subscription.unsubscribe()
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: SubscriptionRegistry,
        window_size: int = 50,
        reconnect_grace_seconds: float = 30.0,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
    ):
        self.store = store
        self.registry = registry
        self.window_size = window_size
        self.reconnect_grace_seconds = reconnect_grace_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._interrupted: Set[str] = set()  # subscription ids in an outage
        self._connection_listeners: Dict[str, ConnectionCallback] = {}
        self._notifications: Set[asyncio.Task] = set()
        metrics.store_connection_online.set(1)

    @property
    def online(self) -> bool:
        return not self._interrupted

    def connection_state(self) -> dict:
        return {
            "online": self.online,
            "timestamp": datetime.now(timezone.utc),
            "active_subscriptions": sum(
                1 for entry in self.registry.list() if entry["kind"] != "connection"
            ),
        }

    def on_connection_change(self, callback: ConnectionCallback) -> Subscription:
        """
        Call ``callback(state)`` whenever the store goes offline or comes back.

        ``state`` is {"online", "timestamp", "active_subscriptions"}. The
        returned subscription stops the notifications.
        """
        subscription = self.registry.create("connection", "store")
        self._connection_listeners[subscription.id] = callback
        subscription.on_close(lambda: self._connection_listeners.pop(subscription.id, None))
        subscription.ready.set()
        return subscription

    def _set_interrupted(self, subscription_id: str, interrupted: bool) -> None:
        was_online = self.online
        if interrupted:
            self._interrupted.add(subscription_id)
        else:
            self._interrupted.discard(subscription_id)
        if self.online == was_online:
            return

        state = self.connection_state()
        metrics.store_connection_online.set(1 if state["online"] else 0)
        if state["online"]:
            logger.info("store_connection_restored", active_subscriptions=state["active_subscriptions"])
        else:
            logger.warning("store_connection_lost", active_subscriptions=state["active_subscriptions"])
        for callback in list(self._connection_listeners.values()):
            task = asyncio.ensure_future(invoke_callback(callback, state))
            self._notifications.add(task)
            task.add_done_callback(self._notifications.discard)

    def subscribe(
        self,
        conversation_id: str,
        on_update: UpdateCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """
        Follow a conversation. ``on_update(view, batch)`` runs after every
        applied batch, starting with the initial window.
        """
        subscription = self.registry.create("conversation", conversation_id)
        view = ConversationView(conversation_id, self.window_size)
        subscription.view = view

        async def load_initial() -> ChangeBatch:
            with PerformanceLogger(
                "initial_window_load", logger, subscription_id=subscription.id
            ):
                docs = await self.store.find(
                    MESSAGES,
                    {"conversation_id": conversation_id},
                    sort=[("created_at", DESCENDING), ("id", DESCENDING)],
                    limit=self.window_size,
                )
            return ChangeBatch(added=docs)

        async def handle(batch: ChangeBatch) -> None:
            view.apply(batch)
            metrics.subscription_batches_total.labels(kind="conversation").inc()
            await invoke_callback(on_update, view, batch)

        self._start(
            subscription,
            MESSAGES,
            {"conversation_id": conversation_id},
            load_initial,
            handle,
            on_error,
        )
        return subscription

    def watch_document(
        self,
        collection: str,
        doc_id: str,
        on_update: Callable[[Optional[Document]], Optional[Awaitable[None]]],
        on_error: Optional[ErrorCallback] = None,
        kind: str = "document",
    ) -> Subscription:
        """
        Follow a single document. ``on_update(doc)`` receives the current
        document, or None if it does not exist (yet).
        """
        subscription = self.registry.create(kind, f"{collection}/{doc_id}")

        async def load_initial() -> ChangeBatch:
            doc = await self.store.get(collection, doc_id)
            if doc is None:
                return ChangeBatch(removed=[doc_id])
            return ChangeBatch(added=[doc])

        async def handle(batch: ChangeBatch) -> None:
            for doc in list(batch.added) + list(batch.modified):
                if doc.get("id") == doc_id:
                    metrics.subscription_batches_total.labels(kind=kind).inc()
                    await invoke_callback(on_update, doc)
            if doc_id in batch.removed:
                await invoke_callback(on_update, None)

        self._start(subscription, collection, {"id": doc_id}, load_initial, handle, on_error)
        return subscription

    def _start(self, subscription, collection, filters, load_initial, handle, on_error) -> None:
        task = asyncio.create_task(
            self._follow(subscription, collection, filters, load_initial, handle, on_error),
            name=f"subscription:{subscription.id}",
        )
        subscription.attach_task(task)
        logger.info(
            "subscription_started",
            subscription_id=subscription.id,
            kind=subscription.kind,
            target=subscription.target,
        )

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base_seconds * (2 ** attempt), self.backoff_max_seconds)

    async def _follow(
        self,
        subscription: Subscription,
        collection: str,
        filters: Document,
        load_initial: Callable[[], Awaitable[ChangeBatch]],
        handle: Callable[[ChangeBatch], Awaitable[None]],
        on_error: Optional[ErrorCallback],
    ) -> None:
        loop = asyncio.get_running_loop()
        attempt = 0
        outage_started: Optional[float] = None
        outage_reported = False

        try:
            while subscription.active:
                try:
                    async with self.store.watch(collection, filters) as feed:
                        # Feed is open before the initial read, so nothing
                        # written in between is missed (duplicates are upserts)
                        await handle(await load_initial())
                        subscription.ready.set()

                        if outage_started is not None:
                            logger.info(
                                "subscription_resumed",
                                subscription_id=subscription.id,
                                outage_seconds=round(loop.time() - outage_started, 3),
                            )
                            self._set_interrupted(subscription.id, False)
                        attempt = 0
                        outage_started = None
                        outage_reported = False

                        async for batch in feed:
                            if batch:
                                await handle(batch)

                    if not subscription.active:
                        break
                    raise TransientError("Change feed ended")

                except PermissionDeniedError as e:
                    metrics.subscription_terminal_errors_total.labels(
                        kind=subscription.kind, error_type=type(e).__name__
                    ).inc()
                    logger.error(
                        "subscription_permission_denied",
                        subscription_id=subscription.id,
                        error=str(e),
                    )
                    await invoke_callback(on_error, e)
                    subscription.unsubscribe()
                    return

                except TransientError as e:
                    now = loop.time()
                    if outage_started is None:
                        outage_started = now
                        logger.warning(
                            "subscription_interrupted",
                            subscription_id=subscription.id,
                            error=str(e),
                        )
                        self._set_interrupted(subscription.id, True)
                    if not outage_reported and now - outage_started >= self.reconnect_grace_seconds:
                        outage_reported = True
                        logger.error(
                            "subscription_outage_exceeded_grace",
                            subscription_id=subscription.id,
                            grace_seconds=self.reconnect_grace_seconds,
                        )
                        await invoke_callback(on_error, e)

                    delay = self._backoff(attempt)
                    attempt += 1
                    metrics.subscription_reconnects_total.labels(kind=subscription.kind).inc()
                    await asyncio.sleep(delay)
        finally:
            self._set_interrupted(subscription.id, False)
            logger.info("subscription_stopped", subscription_id=subscription.id)
