"""
Typing indicators.

The conversation document carries ``typing_users``: user id -> server time of
the last keystroke. Stored entries are hints only; whether a user is typing
is a pure function of (now, last keystroke):

    typing  <=>  now - last_keystroke <= 3000 ms

Writers debounce "typing" writes (at most one per TYPING_WRITE_DEBOUNCE_MS
per user and conversation) and always send the clear. Keystrokes inside the
debounce window are written once when it ends, stamped with the latest
keystroke, so other processes see the renewal. Readers merge the
remote map with keystrokes recorded by this process and re-evaluate on a
timer at the next expiry, so a lost clear still disappears on time.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Set, Tuple

from choptso.core.exceptions import ChatError
from choptso.core.logging_config import get_logger
from choptso.core.retry import RetryPolicy
from choptso.core import metrics
from choptso.db.store import DocumentStore
from choptso.models.conversation import COLLECTION
from choptso.services.conversation_service import ConversationService
from choptso.services.reconciler import ConversationReconciler, invoke_callback
from choptso.services.subscriptions import Subscription

logger = get_logger(__name__)

DEFAULT_WINDOW_MS = 3000

# Timers fire just past the boundary; "<= window" is still typing
_TIMER_SLACK_SECONDS = 0.001


def active_typers(
    typing_users: Mapping[str, datetime],
    now: datetime,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> FrozenSet[str]:
    """Users whose last keystroke is at most ``window_ms`` before ``now``."""
    window = timedelta(milliseconds=window_ms)
    return frozenset(
        user_id
        for user_id, last_keystroke in typing_users.items()
        if isinstance(last_keystroke, datetime) and now - last_keystroke <= window
    )


def next_expiry(
    typing_users: Mapping[str, datetime],
    now: datetime,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> Optional[float]:
    """Seconds until the next active entry expires, or None if nobody is typing."""
    window = timedelta(milliseconds=window_ms)
    remaining = [
        (last_keystroke + window - now).total_seconds()
        for user_id, last_keystroke in typing_users.items()
        if isinstance(last_keystroke, datetime) and now - last_keystroke <= window
    ]
    return min(remaining) if remaining else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _TypingWatch:
    """State of one on_typing_change subscriber."""

    def __init__(self, conversation_id: str, callback: Callable):
        self.conversation_id = conversation_id
        self.callback = callback
        self.remote: Dict[str, datetime] = {}
        self.last: FrozenSet[str] = frozenset()
        self.timer: Optional[asyncio.TimerHandle] = None
        self.pending: Set[asyncio.Task] = set()

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        for task in self.pending:
            task.cancel()
        self.pending.clear()


class TypingTracker:
    """
    Writes and follows typing state.

    Usage:
        subscription = tracker.on_typing_change(cid, lambda users: ...)
        await tracker.set_typing(cid, "alice", True)
    """

    def __init__(
        self,
        store: DocumentStore,
        conversations: ConversationService,
        reconciler: ConversationReconciler,
        retry: Optional[RetryPolicy] = None,
        timeout_ms: int = DEFAULT_WINDOW_MS,
        debounce_ms: int = 1000,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.conversations = conversations
        self.reconciler = reconciler
        self.retry = retry or RetryPolicy()
        self.timeout_ms = timeout_ms
        self.debounce_ms = debounce_ms
        self.clock = clock
        self._local: Dict[str, Dict[str, datetime]] = {}
        # Clears made here; older remote entries for these users are echoes
        self._cleared: Dict[str, Dict[str, datetime]] = {}
        self._last_write: Dict[Tuple[str, str], float] = {}
        # Debounced keystrokes waiting for their trailing write
        self._renewals: Dict[Tuple[str, str], datetime] = {}
        self._trailing: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._flushes: Set[asyncio.Task] = set()
        self._watches: Dict[str, Set[_TypingWatch]] = {}

    # ------------------------------------------------------------------ write

    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        """
        Record a keystroke (True) or clear the indicator (False).

        Raises:
            ValidationError: Unknown conversation
            PermissionDeniedError: User is not a participant
        """
        await self.conversations.require_participant(conversation_id, user_id)
        key = (conversation_id, user_id)
        field = f"typing_users.{user_id}"

        if not is_typing:
            self._local.get(conversation_id, {}).pop(user_id, None)
            self._cleared.setdefault(conversation_id, {})[user_id] = self.clock()
            self._last_write.pop(key, None)
            self._cancel_renewal(key)
            self._refresh(conversation_id)
            await self.retry.run(
                "typing_clear",
                lambda: self.store.update_one(
                    COLLECTION, {"id": conversation_id}, {"$unset": {field: ""}}
                ),
            )
            metrics.typing_writes_total.labels(state="cleared").inc()
            logger.debug("typing_cleared", conversation_id=conversation_id, user_id=user_id)
            return

        self._local.setdefault(conversation_id, {})[user_id] = self.clock()
        self._cleared.get(conversation_id, {}).pop(user_id, None)
        self._refresh(conversation_id)

        loop = asyncio.get_running_loop()
        loop_now = loop.time()
        last_write = self._last_write.get(key)
        if last_write is not None and (loop_now - last_write) * 1000 < self.debounce_ms:
            # Written once at the end of the debounce window
            self._renewals[key] = self.store.now()
            if key not in self._trailing:
                delay = last_write + self.debounce_ms / 1000 - loop_now
                self._trailing[key] = loop.call_later(max(delay, 0), self._flush_renewal, key)
            metrics.typing_writes_debounced_total.inc()
            return

        self._cancel_renewal(key)
        self._last_write[key] = loop_now
        await self._write_keystroke(key, self.store.now())
        logger.debug("typing_started", conversation_id=conversation_id, user_id=user_id)

    async def _write_keystroke(self, key: Tuple[str, str], keystroke: datetime) -> None:
        conversation_id, user_id = key
        await self.retry.run(
            "typing_set",
            lambda: self.store.update_one(
                COLLECTION,
                {"id": conversation_id},
                {"$set": {f"typing_users.{user_id}": keystroke}},
            ),
        )
        metrics.typing_writes_total.labels(state="typing").inc()

    def _flush_renewal(self, key: Tuple[str, str]) -> None:
        self._trailing.pop(key, None)
        keystroke = self._renewals.pop(key, None)
        if keystroke is None:
            return
        self._last_write[key] = asyncio.get_running_loop().time()
        task = asyncio.ensure_future(self._renew(key, keystroke))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _renew(self, key: Tuple[str, str], keystroke: datetime) -> None:
        conversation_id, user_id = key
        try:
            await self._write_keystroke(key, keystroke)
        except ChatError as e:
            logger.warning(
                "typing_renewal_failed",
                conversation_id=conversation_id,
                user_id=user_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return
        logger.debug("typing_renewed", conversation_id=conversation_id, user_id=user_id)

    def _cancel_renewal(self, key: Tuple[str, str]) -> None:
        handle = self._trailing.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._renewals.pop(key, None)

    def close(self) -> None:
        """Drop pending renewal writes and stop every expiry timer."""
        for handle in self._trailing.values():
            handle.cancel()
        self._trailing.clear()
        self._renewals.clear()
        for task in self._flushes:
            task.cancel()
        for watches in self._watches.values():
            for watch in watches:
                watch.cancel()

    # ------------------------------------------------------------------- read

    def effective_map(self, conversation_id: str, remote: Mapping[str, datetime]) -> Dict[str, datetime]:
        """Remote map merged with this process's keystrokes (latest wins)."""
        cleared = self._cleared.get(conversation_id, {})
        merged = {
            user_id: ts
            for user_id, ts in remote.items()
            if isinstance(ts, datetime) and not (user_id in cleared and ts <= cleared[user_id])
        }
        for user_id, ts in self._local.get(conversation_id, {}).items():
            if user_id not in merged or merged[user_id] < ts:
                merged[user_id] = ts
        return merged

    async def current_typers(self, conversation_id: str) -> FrozenSet[str]:
        """One-shot read of the effective typing set."""
        doc = await self.store.get(COLLECTION, conversation_id)
        remote = (doc or {}).get("typing_users") or {}
        return active_typers(
            self.effective_map(conversation_id, remote), self.clock(), self.timeout_ms
        )

    def on_typing_change(
        self,
        conversation_id: str,
        callback: Callable[[FrozenSet[str]], object],
        on_error: Optional[Callable[[Exception], object]] = None,
    ) -> Subscription:
        """
        Follow the effective typing set of a conversation.

        ``callback(users)`` runs whenever the set changes: remote updates,
        local keystrokes, or a keystroke ageing out.
        """
        watch = _TypingWatch(conversation_id, callback)

        def on_document(doc) -> None:
            watch.remote = dict((doc or {}).get("typing_users") or {})
            self._evaluate(watch)

        subscription = self.reconciler.watch_document(
            COLLECTION, conversation_id, on_document, on_error=on_error, kind="typing"
        )
        self._watches.setdefault(conversation_id, set()).add(watch)

        def cleanup() -> None:
            watch.cancel()
            watches = self._watches.get(conversation_id)
            if watches is not None:
                watches.discard(watch)
                if not watches:
                    del self._watches[conversation_id]

        subscription.on_close(cleanup)
        return subscription

    def _refresh(self, conversation_id: str) -> None:
        for watch in list(self._watches.get(conversation_id, ())):
            self._evaluate(watch)

    def _evaluate(self, watch: _TypingWatch) -> None:
        now = self.clock()
        cid = watch.conversation_id

        # Forget local keystrokes that can no longer count
        local = self._local.get(cid)
        if local:
            alive = active_typers(local, now, self.timeout_ms)
            for user_id in [u for u in local if u not in alive]:
                del local[user_id]
        cleared = self._cleared.get(cid)
        if cleared:
            recent = active_typers(cleared, now, self.timeout_ms)
            for user_id in [u for u in cleared if u not in recent]:
                del cleared[user_id]

        merged = self.effective_map(cid, watch.remote)
        typers = active_typers(merged, now, self.timeout_ms)

        if watch.timer is not None:
            watch.timer.cancel()
            watch.timer = None
        delay = next_expiry(merged, now, self.timeout_ms)
        if delay is not None:
            watch.timer = asyncio.get_running_loop().call_later(
                max(delay, 0) + _TIMER_SLACK_SECONDS, self._evaluate, watch
            )

        if typers != watch.last:
            watch.last = typers
            logger.debug("typing_set_changed", conversation_id=cid, typing=sorted(typers))
            task = asyncio.ensure_future(invoke_callback(watch.callback, typers))
            watch.pending.add(task)
            task.add_done_callback(watch.pending.discard)
