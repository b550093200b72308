"""
Delivery/read state machine.

Per (message, recipient) the state only moves forward:

    sent  ->  delivered (in delivered_to)  ->  read (in read_by)

Receipts are written with $addToSet only, so nothing is ever removed, and a
read always adds the reader to delivered_to as well (read_by is a subset of
delivered_to).
"""

from enum import Enum

from choptso.core.logging_config import get_logger
from choptso.core.retry import RetryPolicy
from choptso.core import metrics
from choptso.db.store import DocumentStore
from choptso.models.message import COLLECTION, Message
from choptso.services.conversation_service import ConversationService
from choptso.services.subscriptions import SubscriptionRegistry

logger = get_logger(__name__)


class ReceiptState(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class Indicator(str, Enum):
    """Sender-facing summary over all intended recipients."""
    SINGLE_CHECK = "single_check"
    DOUBLE_CHECK = "double_check"
    DOUBLE_CHECK_READ = "double_check_read"


def receipt_state(message: Message, recipient_id: str) -> ReceiptState:
    if recipient_id in message.read_by:
        return ReceiptState.READ
    if recipient_id in message.delivered_to:
        return ReceiptState.DELIVERED
    return ReceiptState.SENT


def aggregate_indicator(message: Message) -> Indicator:
    """
    Read only when every recipient has read, delivered only when every
    recipient has received. One fast reader in a broadcast changes nothing.
    """
    recipients = message.recipients
    if not recipients:
        return Indicator.SINGLE_CHECK
    if all(r in message.read_by for r in recipients):
        return Indicator.DOUBLE_CHECK_READ
    if all(r in message.delivered_to or r in message.read_by for r in recipients):
        return Indicator.DOUBLE_CHECK
    return Indicator.SINGLE_CHECK


def _pending_filter(conversation_id: str, user_id: str, field: str) -> dict:
    return {
        "conversation_id": conversation_id,
        "recipients": user_id,
        "sender_id": {"$ne": user_id},
        field: {"$ne": user_id},
    }


class ReceiptService:
    """
    Receipt writes and unread counts.

    Usage:
        await receipts.mark_read("dm:alice:bob", "bob")
        assert await receipts.unread_count("dm:alice:bob", "bob") == 0
    """

    def __init__(
        self,
        store: DocumentStore,
        conversations: ConversationService,
        registry: SubscriptionRegistry,
        retry: RetryPolicy = None,
    ):
        self.store = store
        self.conversations = conversations
        self.registry = registry
        self.retry = retry or RetryPolicy()

    async def mark_delivered(self, conversation_id: str, recipient_id: str) -> int:
        """Record delivery of every pending message to ``recipient_id``."""
        await self.conversations.require_participant(conversation_id, recipient_id)

        modified = await self.retry.run(
            "mark_delivered",
            lambda: self.store.update_many(
                COLLECTION,
                _pending_filter(conversation_id, recipient_id, "delivered_to"),
                {"$addToSet": {"delivered_to": recipient_id}},
            ),
        )
        for view in self.registry.views_for(conversation_id):
            view.acknowledge_delivered(recipient_id)

        metrics.receipts_total.labels(kind="delivered").inc(modified)
        logger.info(
            "messages_marked_delivered",
            conversation_id=conversation_id,
            user_id=recipient_id,
            modified=modified,
        )
        return modified

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """
        Mark every unread message addressed to ``reader_id`` as read.

        Idempotent; the reader's own messages are never touched. Live views
        are updated before returning so their unread count is already zero.
        """
        await self.conversations.require_participant(conversation_id, reader_id)

        modified = await self.retry.run(
            "mark_read",
            lambda: self.store.update_many(
                COLLECTION,
                _pending_filter(conversation_id, reader_id, "read_by"),
                {"$addToSet": {"read_by": reader_id, "delivered_to": reader_id}},
            ),
        )
        for view in self.registry.views_for(conversation_id):
            view.acknowledge_read(reader_id)

        metrics.receipts_total.labels(kind="read").inc(modified)
        logger.info(
            "messages_marked_read",
            conversation_id=conversation_id,
            user_id=reader_id,
            modified=modified,
        )
        return modified

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        await self.conversations.require_participant(conversation_id, user_id)
        return await self.store.count(
            COLLECTION, _pending_filter(conversation_id, user_id, "read_by")
        )
