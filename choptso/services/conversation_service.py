"""
ConversationService - conversation lookup, creation and membership checks.

Direct conversations are created implicitly on the first message between
two users, under a deterministic pairwise id. Broadcasts are created
explicitly by their owner with a fixed participant set.

Participant sets never change after creation, so membership lookups are
cached in Redis (when configured) under ``conversation:{id}``.
"""

from typing import Iterable, Optional

from choptso.config import settings
from choptso.core.cache import CacheBackend
from choptso.core.exceptions import PermissionDeniedError, ValidationError
from choptso.core.logging_config import get_logger
from choptso.core.retry import RetryPolicy
from choptso.db.store import DocumentStore
from choptso.models.conversation import (
    COLLECTION,
    Conversation,
    ConversationKind,
    direct_conversation_id,
    new_broadcast_id,
)

logger = get_logger(__name__)


class ConversationService:
    """
    Conversation access with caching.

    Usage:
        conversation = await conversations.open_direct("alice", "bob")
        await conversations.require_participant(conversation.id, "alice")
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: Optional[CacheBackend] = None,
        retry: Optional[RetryPolicy] = None,
        cache_ttl: int = None,
    ):
        self.store = store
        self.cache = cache or CacheBackend()
        self.retry = retry or RetryPolicy()
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.CONVERSATION_CACHE_TTL

    @staticmethod
    def _cache_key(conversation_id: str) -> str:
        return f"conversation:{conversation_id}"

    async def get(self, conversation_id: str, use_cache: bool = True) -> Optional[Conversation]:
        """Fetch a conversation, or None if it does not exist."""
        key = self._cache_key(conversation_id)
        if use_cache:
            cached = await self.cache.get_json(key)
            if cached is not None:
                return Conversation.model_validate(cached)

        doc = await self.store.get(COLLECTION, conversation_id)
        if doc is None:
            return None

        conversation = Conversation.from_document(doc)
        await self.cache.set_json(
            key,
            conversation.model_dump(mode="json", exclude={"typing_users"}),
            ttl=self.cache_ttl,
        )
        return conversation

    async def require(self, conversation_id: str) -> Conversation:
        """Fetch a conversation or raise ValidationError (unknown conversation)."""
        conversation = await self.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            raise ValidationError(f"Unknown conversation: {conversation_id}")
        return conversation

    async def require_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Fetch a conversation and check ``user_id`` takes part in it.

        Raises:
            ValidationError: Conversation does not exist
            PermissionDeniedError: User is not a participant
        """
        conversation = await self.require(conversation_id)
        if not conversation.has_participant(user_id):
            logger.warning(
                "user_not_participant",
                conversation_id=conversation_id,
                user_id=user_id,
            )
            raise PermissionDeniedError("You are not a participant of this conversation")
        return conversation

    async def open_direct(self, user_id: str, other_user_id: str) -> Conversation:
        """
        Return the pairwise conversation, creating it if needed.

        Idempotent: both users always land on the same document.
        """
        if not other_user_id or user_id == other_user_id:
            raise ValidationError("A direct conversation needs two distinct users")

        conversation_id = direct_conversation_id(user_id, other_user_id)
        existing = await self.get(conversation_id)
        if existing is not None:
            return existing

        now = self.store.now()
        doc = await self.retry.run(
            "open_direct",
            lambda: self.store.upsert(
                COLLECTION,
                conversation_id,
                {},
                defaults={
                    "kind": ConversationKind.DIRECT.value,
                    "participants": sorted([user_id, other_user_id]),
                    "title": None,
                    "created_by": user_id,
                    "created_at": now,
                    "last_message_at": None,
                    "typing_users": {},
                },
            ),
        )
        logger.info(
            "conversation_opened",
            conversation_id=conversation_id,
            kind=ConversationKind.DIRECT.value,
            created_by=user_id,
        )
        return Conversation.from_document(doc)

    async def create_broadcast(
        self, owner_id: str, participant_ids: Iterable[str], title: str
    ) -> Conversation:
        """Create a broadcast conversation; the owner is always a participant."""
        participants = sorted(set(participant_ids) | {owner_id})
        if len(participants) < 2:
            raise ValidationError("A conversation needs at least two participants")
        if not title or not title.strip():
            raise ValidationError("A broadcast needs a title")

        doc = {
            "id": new_broadcast_id(),
            "kind": ConversationKind.BROADCAST.value,
            "participants": participants,
            "title": title.strip(),
            "created_by": owner_id,
            "created_at": self.store.now(),
            "last_message_at": None,
            "typing_users": {},
        }
        stored = await self.retry.run(
            "create_broadcast", lambda: self.store.insert(COLLECTION, doc)
        )
        logger.info(
            "conversation_opened",
            conversation_id=stored["id"],
            kind=ConversationKind.BROADCAST.value,
            created_by=owner_id,
            participant_count=len(participants),
        )
        return Conversation.from_document(stored)

    async def touch(self, conversation_id: str, timestamp) -> None:
        """Record the time of the latest message."""
        await self.retry.run(
            "touch_conversation",
            lambda: self.store.update_one(
                COLLECTION,
                {"id": conversation_id},
                {"$set": {"last_message_at": timestamp}},
            ),
        )
        await self.cache.delete(self._cache_key(conversation_id))
