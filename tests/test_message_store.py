"""
Tests for MessageStore.

Tests cover:
- Sending (validation, sanitization, replies, implicit direct conversations)
- Tombstones: idempotent delete, frozen body, reactions still allowed
- Reactions (multiple emoji per user)
- Editing
- History pagination
- Retried writes
"""

from datetime import timedelta

import pytest

from choptso.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)
from choptso.db.memory import InMemoryDocumentStore
from choptso.models.message import COLLECTION, DELETED_PLACEHOLDER
from choptso.services.message_store import encode_cursor


class FlakyInsertStore(InMemoryDocumentStore):
    """Fails the first ``failures`` inserts with TransientError."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.insert_calls = 0

    async def insert(self, collection, doc):
        self.insert_calls += 1
        if self.insert_calls <= self.failures:
            raise TransientError("store unavailable")
        return await super().insert(collection, doc)


class TestSend:
    @pytest.mark.asyncio
    async def test_send_initial_state(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "Hello")

        assert message.body == "Hello"
        assert message.sender_id == "alice"
        assert message.recipients == ["bob"]
        assert message.read_by == []
        assert message.delivered_to == []
        assert message.reactions == {}
        assert message.deleted is False
        assert message.created_at is not None

        stored = await container.messages.get(message.id)
        assert stored == message

    @pytest.mark.asyncio
    async def test_send_updates_last_message_at(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "Hello")
        conversation = await container.conversations.get(direct.id, use_cache=False)
        assert conversation.last_message_at == message.created_at

    @pytest.mark.asyncio
    async def test_empty_body_without_attachment_rejected(self, container, direct):
        with pytest.raises(ValidationError):
            await container.messages.send(direct.id, "alice", "Alice", "   ")

    @pytest.mark.asyncio
    async def test_empty_body_with_attachment_allowed(self, container, direct):
        message = await container.messages.send(
            direct.id, "alice", "Alice", "", attachment="files/cat.png"
        )
        assert message.body == ""
        assert message.attachment == "files/cat.png"

    @pytest.mark.asyncio
    async def test_html_is_stripped(self, container, direct):
        message = await container.messages.send(
            direct.id, "alice", "Alice", "<script>alert('x')</script>Hello <b>Bob</b>"
        )
        assert "<" not in message.body
        assert "Hello" in message.body and "Bob" in message.body

    @pytest.mark.asyncio
    async def test_sender_must_be_participant(self, container, direct):
        with pytest.raises(ValidationError):
            await container.messages.send(direct.id, "mallory", "Mallory", "Hi")

    @pytest.mark.asyncio
    async def test_unknown_conversation_rejected(self, container):
        with pytest.raises(ValidationError):
            await container.messages.send("dm:nobody:nowhere", "nobody", "N", "Hi")

    @pytest.mark.asyncio
    async def test_reply_carries_snippet(self, container, direct):
        original = await container.messages.send(direct.id, "alice", "Alice", "Lunch at noon?")
        reply = await container.messages.send(
            direct.id, "bob", "Bob", "Sure", reply_to_id=original.id
        )
        assert reply.reply_to.message_id == original.id
        assert reply.reply_to.sender_name == "Alice"
        assert reply.reply_to.snippet == "Lunch at noon?"

    @pytest.mark.asyncio
    async def test_reply_to_other_conversation_rejected(self, container, direct, broadcast):
        elsewhere = await container.messages.send(broadcast.id, "xavier", "Xavier", "Hi all")
        with pytest.raises(ValidationError):
            await container.messages.send(direct.id, "alice", "Alice", "Re", reply_to_id=elsewhere.id)

    @pytest.mark.asyncio
    async def test_send_direct_creates_conversation_once(self, container):
        first = await container.messages.send_direct("carol", "Carol", "dave", "Hi Dave")
        second = await container.messages.send_direct("dave", "Dave", "carol", "Hi Carol")

        assert first.conversation_id == second.conversation_id == "dm:carol:dave"
        conversations = await container.store.find("conversations", {"participants": "carol"})
        assert len(conversations) == 1

    @pytest.mark.asyncio
    async def test_send_direct_to_self_rejected(self, container):
        with pytest.raises(ValidationError):
            await container.messages.send_direct("carol", "Carol", "carol", "Hi me")

    @pytest.mark.asyncio
    async def test_broadcast_recipients_snapshot(self, container, broadcast):
        message = await container.messages.send(broadcast.id, "xavier", "Xavier", "Hello")
        assert sorted(message.recipients) == ["yara", "zoe"]


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, container, direct):
        """A second delete is a no-op, not an error."""
        message = await container.messages.send(direct.id, "alice", "Alice", "oops")

        first = await container.messages.mark_deleted(message.id, "alice")
        second = await container.messages.mark_deleted(message.id, "alice")

        assert first.deleted and second.deleted
        assert second.deleted_at == first.deleted_at
        stored = await container.messages.get(message.id)
        assert stored.deleted_at == first.deleted_at

    @pytest.mark.asyncio
    async def test_tombstone_keeps_row_and_shows_placeholder(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "secret")
        await container.messages.mark_deleted(message.id, "alice")

        stored = await container.messages.get(message.id)
        assert stored.body == "secret"
        assert stored.display_body == DELETED_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_only_sender_may_delete(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "mine")

        with pytest.raises(PermissionDeniedError) as exc_info:
            await container.messages.mark_deleted(message.id, "bob")
        assert isinstance(exc_info.value, PermissionError)
        assert (await container.messages.get(message.id)).deleted is False

    @pytest.mark.asyncio
    async def test_admin_may_delete(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "spam")
        deleted = await container.messages.mark_deleted(message.id, "moderator", is_admin=True)
        assert deleted.deleted

    @pytest.mark.asyncio
    async def test_unknown_message(self, container):
        with pytest.raises(NotFoundError):
            await container.messages.mark_deleted("missing", "alice")


class TestTombstoneInteractions:
    @pytest.mark.asyncio
    async def test_reaction_allowed_but_edit_rejected_after_delete(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "original")
        await container.messages.mark_deleted(message.id, "alice")

        reacted = await container.messages.add_reaction(message.id, "bob", "👍")
        assert reacted.reactions["👍"] == ["bob"]

        with pytest.raises(ValidationError):
            await container.messages.edit(message.id, "alice", "rewritten")

        stored = await container.messages.get(message.id)
        assert stored.body == "original"
        assert stored.edited_at is None
        assert stored.reactions == {"👍": ["bob"]}


class TestReactions:
    @pytest.mark.asyncio
    async def test_multiple_emoji_per_user_are_kept(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "news")

        await container.messages.add_reaction(message.id, "bob", "👍")
        await container.messages.add_reaction(message.id, "bob", "🎉")
        result = await container.messages.add_reaction(message.id, "bob", "👍")

        assert result.reactions == {"👍": ["bob"], "🎉": ["bob"]}

    @pytest.mark.asyncio
    async def test_remove_reaction_and_absent_noop(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "news")
        await container.messages.add_reaction(message.id, "bob", "👍")

        removed = await container.messages.remove_reaction(message.id, "bob", "👍")
        assert removed.active_reactions() == {}

        again = await container.messages.remove_reaction(message.id, "bob", "👍")
        assert again.active_reactions() == {}
        absent = await container.messages.remove_reaction(message.id, "alice", "🔥")
        assert absent.active_reactions() == {}

    @pytest.mark.asyncio
    async def test_non_participant_cannot_react(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "news")
        with pytest.raises(PermissionDeniedError):
            await container.messages.add_reaction(message.id, "mallory", "👍")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("emoji", ["", "a.b", "$set", "x" * 40])
    async def test_invalid_emoji_rejected(self, container, direct, emoji):
        message = await container.messages.send(direct.id, "alice", "Alice", "news")
        with pytest.raises(ValidationError):
            await container.messages.add_reaction(message.id, "bob", emoji)


class TestEdit:
    @pytest.mark.asyncio
    async def test_sender_can_edit(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "helo")
        edited = await container.messages.edit(message.id, "alice", "hello")

        assert edited.body == "hello"
        assert edited.edited_at is not None
        assert edited.created_at == message.created_at

    @pytest.mark.asyncio
    async def test_other_user_cannot_edit(self, container, direct):
        message = await container.messages.send(direct.id, "alice", "Alice", "helo")
        with pytest.raises(PermissionDeniedError):
            await container.messages.edit(message.id, "bob", "hacked")


class TestFetchPage:
    @pytest.mark.asyncio
    async def test_pages_walk_backwards_oldest_first(self, container, direct):
        sent = [
            await container.messages.send(direct.id, "alice", "Alice", f"m{i}")
            for i in range(5)
        ]

        page = await container.messages.fetch_page(direct.id, "bob", limit=2)
        assert [m.body for m in page.messages] == ["m3", "m4"]
        assert page.has_more
        assert page.next_cursor == encode_cursor(sent[3])

        page = await container.messages.fetch_page(direct.id, "bob", before=page.next_cursor, limit=2)
        assert [m.body for m in page.messages] == ["m1", "m2"]
        assert page.has_more

        page = await container.messages.fetch_page(direct.id, "bob", before=page.next_cursor, limit=2)
        assert [m.body for m in page.messages] == ["m0"]
        assert not page.has_more
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_messages_sharing_a_timestamp_are_not_skipped(self, container, direct):
        shared = container.store.now()
        for message_id, created_at in (
            ("a", shared),
            ("b", shared),
            ("c", shared + timedelta(seconds=1)),
        ):
            await container.store.insert(COLLECTION, {
                "id": message_id,
                "conversation_id": direct.id,
                "sender_id": "alice",
                "sender_name": "Alice",
                "recipients": ["bob"],
                "body": message_id,
                "created_at": created_at,
            })

        seen = []
        cursor = None
        while True:
            page = await container.messages.fetch_page(direct.id, "bob", before=cursor, limit=2)
            seen = [m.id for m in page.messages] + seen
            if not page.has_more:
                break
            cursor = page.next_cursor

        assert seen == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_malformed_cursor_rejected(self, container, direct):
        with pytest.raises(ValidationError):
            await container.messages.fetch_page(direct.id, "bob", before="yesterday")

    @pytest.mark.asyncio
    async def test_non_participant_cannot_read_history(self, container, direct):
        with pytest.raises(PermissionDeniedError):
            await container.messages.fetch_page(direct.id, "mallory")


class TestRetriedWrites:
    @pytest.mark.asyncio
    async def test_send_survives_transient_insert_failures(self):
        from choptso.core.retry import RetryPolicy
        from choptso.services.conversation_service import ConversationService
        from choptso.services.message_store import MessageStore

        store = FlakyInsertStore(failures=2)
        retry = RetryPolicy(max_attempts=3, backoff_base_seconds=0.001)
        conversations = ConversationService(store, retry=retry, cache_ttl=60)
        messages = MessageStore(store, conversations, retry)

        conversation = await conversations.open_direct("alice", "bob")
        message = await messages.send(conversation.id, "alice", "Alice", "persistent")

        assert store.insert_calls == 3
        assert (await messages.get(message.id)).body == "persistent"
