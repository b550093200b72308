"""
MessageStore - translates message operations into document mutations.

Operations:
- send / send_direct: create a message (direct conversations are created
  implicitly on first message)
- edit: change the body (sender only, never on a tombstone)
- mark_deleted: tombstone a message (sender or admin, idempotent)
- add_reaction / remove_reaction: participants only, allowed on tombstones
- fetch_page: older history before a cursor

Invariants enforced here:
- a tombstone's body is frozen; the row is never physically removed
- reactions are per-emoji sets; a user may hold several emoji at once
- every write goes through the RetryPolicy (timeout + backoff on transient errors)
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import bleach

from choptso.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from choptso.core.logging_config import get_logger
from choptso.core.retry import RetryPolicy
from choptso.core import metrics
from choptso.db.store import DESCENDING, DocumentStore
from choptso.models.message import COLLECTION, Message, ReplyRef
from choptso.services.conversation_service import ConversationService

logger = get_logger(__name__)

MAX_BODY_LENGTH = 10000
MAX_EMOJI_LENGTH = 32


def sanitize_body(body: Optional[str]) -> str:
    """Strip all HTML/JS tags while preserving text content."""
    if not body:
        return ""
    return bleach.clean(body, tags=[], strip=True).strip()


def validate_emoji(emoji: str) -> str:
    """
    Reaction keys become document field names, so they cannot contain '.'
    or start with '$'.
    """
    emoji = (emoji or "").strip()
    if not emoji:
        raise ValidationError("Reaction emoji is required")
    if len(emoji) > MAX_EMOJI_LENGTH:
        raise ValidationError("Reaction emoji is too long")
    if "." in emoji or emoji.startswith("$"):
        raise ValidationError("Reaction emoji contains forbidden characters")
    return emoji


def encode_cursor(message: Message) -> str:
    """Opaque history cursor: ``<created_at ISO>|<message id>``."""
    return f"{message.created_at.isoformat()}|{message.id}"


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    created_at, separator, message_id = (cursor or "").partition("|")
    if not separator or not message_id:
        raise ValidationError("Malformed history cursor")
    try:
        timestamp = datetime.fromisoformat(created_at)
    except ValueError:
        raise ValidationError("Malformed history cursor") from None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp, message_id


@dataclass
class MessagePage:
    """One page of older history, oldest first."""
    messages: List[Message] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


@asynccontextmanager
async def _tracked(operation: str):
    start_time = time.time()
    try:
        yield
    except Exception as e:
        metrics.message_operation_errors_total.labels(
            operation=operation,
            error_type=type(e).__name__
        ).inc()
        raise
    finally:
        metrics.message_operation_duration_seconds.labels(
            operation=operation
        ).observe(time.time() - start_time)


class MessageStore:
    """Message mutations against the document store."""

    def __init__(
        self,
        store: DocumentStore,
        conversations: ConversationService,
        retry: Optional[RetryPolicy] = None,
        page_size_max: int = 100,
    ):
        self.store = store
        self.conversations = conversations
        self.retry = retry or RetryPolicy()
        self.page_size_max = page_size_max

    async def get(self, message_id: str) -> Message:
        doc = await self.store.get(COLLECTION, message_id)
        if doc is None:
            raise NotFoundError("Message not found")
        return Message.from_document(doc)

    async def send(
        self,
        conversation_id: str,
        sender_id: str,
        sender_name: str,
        body: str,
        reply_to_id: Optional[str] = None,
        attachment: Optional[str] = None,
    ) -> Message:
        """
        Create a message in a conversation.

        The message starts with no receipts, no reactions and deleted=false;
        created_at is assigned by the store.

        Raises:
            ValidationError: Empty body without attachment, unknown
                conversation, sender not a participant, or a reply target
                outside this conversation
        """
        async with _tracked("send"):
            clean_body = sanitize_body(body)
            attachment = attachment or None
            if not clean_body and not attachment:
                raise ValidationError("Message body is empty and no attachment is attached")
            if len(clean_body) > MAX_BODY_LENGTH:
                raise ValidationError(f"Message body exceeds {MAX_BODY_LENGTH} characters")

            conversation = await self.conversations.require(conversation_id)
            if not conversation.has_participant(sender_id):
                logger.warning(
                    "send_rejected_not_participant",
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                )
                raise ValidationError("Sender is not a participant of this conversation")

            reply_to = None
            if reply_to_id:
                reply_to = await self._reply_ref(conversation_id, reply_to_id)

            now = self.store.now()
            doc = {
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "sender_name": sender_name or sender_id,
                "recipients": conversation.recipients_for(sender_id),
                "body": clean_body,
                "attachment": attachment,
                "created_at": now,
                "edited_at": None,
                "reply_to": reply_to.model_dump() if reply_to else None,
                "reactions": {},
                "read_by": [],
                "delivered_to": [],
                "deleted": False,
                "deleted_at": None,
            }
            stored = await self.retry.run("send", lambda: self.store.insert(COLLECTION, doc))
            message = Message.from_document(stored)

            await self.conversations.touch(conversation_id, now)

            metrics.messages_sent_total.labels(kind=conversation.kind.value).inc()
            logger.info(
                "message_sent",
                message_id=message.id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                recipient_count=len(message.recipients),
                has_attachment=attachment is not None,
                is_reply=reply_to is not None,
            )
            return message

    async def send_direct(
        self,
        sender_id: str,
        sender_name: str,
        recipient_id: str,
        body: str,
        reply_to_id: Optional[str] = None,
        attachment: Optional[str] = None,
    ) -> Message:
        """Send to the pairwise conversation, creating it on first message."""
        conversation = await self.conversations.open_direct(sender_id, recipient_id)
        return await self.send(
            conversation.id,
            sender_id,
            sender_name,
            body,
            reply_to_id=reply_to_id,
            attachment=attachment,
        )

    async def _reply_ref(self, conversation_id: str, reply_to_id: str) -> ReplyRef:
        doc = await self.store.get(COLLECTION, reply_to_id)
        if doc is None or doc["conversation_id"] != conversation_id:
            raise ValidationError("Reply target is not a message of this conversation")
        original = Message.from_document(doc)
        return ReplyRef(
            message_id=original.id,
            sender_name=original.sender_name,
            snippet=original.snippet,
        )

    async def edit(self, message_id: str, acting_user_id: str, body: str) -> Message:
        """
        Replace the body of a message (sender only).

        Raises:
            NotFoundError: Unknown message
            PermissionDeniedError: Actor is not the sender
            ValidationError: Message is deleted, or the new body is empty
        """
        async with _tracked("edit"):
            message = await self.get(message_id)
            if message.sender_id != acting_user_id:
                raise PermissionDeniedError("You can only edit your own messages")
            if message.deleted:
                raise ValidationError("Deleted messages cannot be edited")

            clean_body = sanitize_body(body)
            if not clean_body and not message.attachment:
                raise ValidationError("Message body is empty and no attachment is attached")
            if len(clean_body) > MAX_BODY_LENGTH:
                raise ValidationError(f"Message body exceeds {MAX_BODY_LENGTH} characters")

            now = self.store.now()
            doc = await self.retry.run(
                "edit",
                lambda: self.store.update_one(
                    COLLECTION,
                    {"id": message_id, "deleted": False},
                    {"$set": {"body": clean_body, "edited_at": now}},
                ),
            )
            if doc is None:
                # Tombstoned between the read and the write
                raise ValidationError("Deleted messages cannot be edited")

            logger.info("message_edited", message_id=message_id, user_id=acting_user_id)
            return Message.from_document(doc)

    async def mark_deleted(
        self, message_id: str, acting_user_id: str, is_admin: bool = False
    ) -> Message:
        """
        Tombstone a message (sender or admin).

        Idempotent: deleting a tombstone is a no-op and returns it unchanged.

        Raises:
            NotFoundError: Unknown message
            PermissionDeniedError: Actor is neither sender nor admin
        """
        async with _tracked("delete"):
            message = await self.get(message_id)

            if not is_admin and message.sender_id != acting_user_id:
                logger.warning(
                    "non_admin_delete_attempt_blocked",
                    message_id=message_id,
                    message_sender_id=message.sender_id,
                    requesting_user_id=acting_user_id,
                )
                raise PermissionDeniedError("You can only delete your own messages")

            if message.deleted:
                logger.debug("message_already_deleted", message_id=message_id)
                return message

            now = self.store.now()
            doc = await self.retry.run(
                "delete",
                lambda: self.store.update_one(
                    COLLECTION,
                    {"id": message_id, "deleted": False},
                    {"$set": {"deleted": True, "deleted_at": now}},
                ),
            )
            if doc is None:
                # Someone else tombstoned it first; same end state
                return await self.get(message_id)

            metrics.messages_deleted_total.inc()
            logger.info(
                "message_deleted",
                message_id=message_id,
                user_id=acting_user_id,
                by_admin=is_admin and message.sender_id != acting_user_id,
            )
            return Message.from_document(doc)

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Add ``user_id`` to ``reactions[emoji]``; other emoji of the user are kept."""
        return await self._react(message_id, user_id, emoji, "$addToSet", "add")

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Remove ``user_id`` from ``reactions[emoji]``; no-op if absent."""
        return await self._react(message_id, user_id, emoji, "$pull", "remove")

    async def _react(
        self, message_id: str, user_id: str, emoji: str, operator: str, action: str
    ) -> Message:
        async with _tracked(f"reaction_{action}"):
            emoji = validate_emoji(emoji)
            message = await self.get(message_id)
            await self.conversations.require_participant(message.conversation_id, user_id)

            doc = await self.retry.run(
                f"reaction_{action}",
                lambda: self.store.update_one(
                    COLLECTION,
                    {"id": message_id},
                    {operator: {f"reactions.{emoji}": user_id}},
                ),
            )
            if doc is None:
                raise NotFoundError("Message not found")

            metrics.reactions_total.labels(action=action).inc()
            logger.info(
                "reaction_changed",
                message_id=message_id,
                user_id=user_id,
                emoji=emoji,
                action=action,
            )
            return Message.from_document(doc)

    async def fetch_page(
        self,
        conversation_id: str,
        user_id: str,
        before: Optional[str] = None,
        limit: int = 50,
    ) -> MessagePage:
        """
        Older history, newest-first query before ``before``, returned oldest first.

        ``next_cursor`` names the oldest message in the page by
        ``(created_at, id)`` and is set only when more history exists.
        Messages sharing a created_at are split across pages by id.
        """
        await self.conversations.require_participant(conversation_id, user_id)
        limit = max(1, min(limit, self.page_size_max))

        filters = {"conversation_id": conversation_id}
        if before is not None:
            created_at, message_id = decode_cursor(before)
            filters["$or"] = [
                {"created_at": {"$lt": created_at}},
                {"created_at": created_at, "id": {"$lt": message_id}},
            ]

        docs = await self.store.find(
            COLLECTION,
            filters,
            sort=[("created_at", DESCENDING), ("id", DESCENDING)],
            limit=limit + 1,
        )
        has_more = len(docs) > limit
        messages = [Message.from_document(doc) for doc in reversed(docs[:limit])]

        logger.info(
            "messages_fetched",
            conversation_id=conversation_id,
            user_id=user_id,
            before=before,
            returned=len(messages),
            has_more=has_more,
        )
        return MessagePage(
            messages=messages,
            has_more=has_more,
            next_cursor=encode_cursor(messages[0]) if has_more and messages else None,
        )
