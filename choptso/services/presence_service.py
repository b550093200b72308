"""
PresenceService - user status (online/away/busy/offline) with optional emoji.

One document per user in the ``presence`` collection, keyed by user id.
Only the user themself may write it (administrators may override); anyone
may read or follow it.
"""

from typing import Callable, Optional

from choptso.core.exceptions import PermissionDeniedError, ValidationError
from choptso.core.logging_config import get_logger
from choptso.core.retry import RetryPolicy
from choptso.core import metrics
from choptso.db.store import DocumentStore
from choptso.models.presence import COLLECTION, Presence, UserStatus
from choptso.services.reconciler import ConversationReconciler, invoke_callback
from choptso.services.subscriptions import Subscription

logger = get_logger(__name__)

MAX_STATUS_EMOJI_LENGTH = 32


class PresenceService:
    def __init__(
        self,
        store: DocumentStore,
        reconciler: ConversationReconciler,
        retry: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.retry = retry or RetryPolicy()

    async def set_status(
        self,
        acting_user_id: str,
        user_id: str,
        status,
        emoji: Optional[str] = None,
        is_admin: bool = False,
    ) -> Presence:
        """
        Write a user's presence.

        Raises:
            PermissionDeniedError: Writing someone else's presence without admin rights
            ValidationError: Unknown status or oversized emoji
        """
        if acting_user_id != user_id and not is_admin:
            logger.warning(
                "presence_write_blocked",
                acting_user_id=acting_user_id,
                user_id=user_id,
            )
            raise PermissionDeniedError("You can only change your own status")

        try:
            status = UserStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")

        emoji = (emoji or "").strip() or None
        if emoji is not None and len(emoji) > MAX_STATUS_EMOJI_LENGTH:
            raise ValidationError("Status emoji is too long")

        doc = await self.retry.run(
            "set_status",
            lambda: self.store.upsert(
                COLLECTION,
                user_id,
                {"$set": {
                    "status": status.value,
                    "emoji": emoji,
                    "last_seen": self.store.now(),
                }},
            ),
        )
        metrics.presence_updates_total.labels(status=status.value).inc()
        logger.info(
            "presence_updated",
            user_id=user_id,
            status=status.value,
            by_admin=acting_user_id != user_id,
        )
        return Presence.from_document(doc)

    async def get_status(self, user_id: str) -> Presence:
        doc = await self.store.get(COLLECTION, user_id)
        if doc is None:
            return Presence.offline(user_id)
        return Presence.from_document(doc)

    def on_status_change(
        self,
        user_id: str,
        callback: Callable[[Presence], object],
        on_error: Optional[Callable[[Exception], object]] = None,
    ) -> Subscription:
        """Follow a user's presence; a missing document reads as offline."""

        async def on_document(doc) -> None:
            presence = Presence.from_document(doc) if doc else Presence.offline(user_id)
            await invoke_callback(callback, presence)

        return self.reconciler.watch_document(
            COLLECTION, user_id, on_document, on_error=on_error, kind="presence"
        )
