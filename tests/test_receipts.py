"""
Tests for the delivery/read state machine.

Tests cover:
- Per-recipient state and the aggregate indicator over all recipients
- mark_read / mark_delivered idempotency and monotonicity
- Unread counts, remote and in live views
"""

import asyncio

import pytest

from choptso.core.exceptions import PermissionDeniedError
from choptso.services.receipts import (
    Indicator,
    ReceiptState,
    aggregate_indicator,
    receipt_state,
)


async def send_all(container, conversation_id, sender, bodies):
    return [
        await container.messages.send(conversation_id, sender, sender.title(), body)
        for body in bodies
    ]


class TestIndicator:
    @pytest.mark.asyncio
    async def test_broadcast_needs_every_recipient(self, container, broadcast):
        """One fast reader does not turn the indicator; everyone reading does."""
        message = await container.messages.send(broadcast.id, "xavier", "Xavier", "Hello")
        assert message.delivered_to == []
        assert aggregate_indicator(message) == Indicator.SINGLE_CHECK

        await container.receipts.mark_read(broadcast.id, "yara")
        message = await container.messages.get(message.id)
        assert aggregate_indicator(message) == Indicator.SINGLE_CHECK

        await container.receipts.mark_read(broadcast.id, "zoe")
        message = await container.messages.get(message.id)
        assert aggregate_indicator(message) == Indicator.DOUBLE_CHECK_READ

    @pytest.mark.asyncio
    async def test_all_delivered_is_double_check(self, container, broadcast):
        message = await container.messages.send(broadcast.id, "xavier", "Xavier", "Hello")

        await container.receipts.mark_delivered(broadcast.id, "yara")
        await container.receipts.mark_read(broadcast.id, "zoe")
        message = await container.messages.get(message.id)

        assert aggregate_indicator(message) == Indicator.DOUBLE_CHECK

    @pytest.mark.asyncio
    async def test_receipt_state_per_recipient(self, container, broadcast):
        message = await container.messages.send(broadcast.id, "xavier", "Xavier", "Hello")
        await container.receipts.mark_delivered(broadcast.id, "yara")
        await container.receipts.mark_read(broadcast.id, "zoe")
        message = await container.messages.get(message.id)

        assert receipt_state(message, "yara") == ReceiptState.DELIVERED
        assert receipt_state(message, "zoe") == ReceiptState.READ


class TestMarkRead:
    @pytest.mark.asyncio
    async def test_read_implies_delivered(self, container, direct):
        message, = await send_all(container, direct.id, "alice", ["hi"])
        await container.receipts.mark_read(direct.id, "bob")

        message = await container.messages.get(message.id)
        assert message.read_by == ["bob"]
        assert message.delivered_to == ["bob"]

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, container, direct):
        await send_all(container, direct.id, "alice", ["one", "two"])

        assert await container.receipts.mark_read(direct.id, "bob") == 2
        assert await container.receipts.mark_read(direct.id, "bob") == 0

    @pytest.mark.asyncio
    async def test_own_messages_are_never_marked(self, container, direct):
        own, = await send_all(container, direct.id, "bob", ["from bob"])
        await container.receipts.mark_read(direct.id, "bob")

        own = await container.messages.get(own.id)
        assert own.read_by == []
        assert own.delivered_to == []

    @pytest.mark.asyncio
    async def test_receipts_never_move_backwards(self, container, direct):
        message, = await send_all(container, direct.id, "alice", ["hi"])
        await container.receipts.mark_read(direct.id, "bob")
        await container.receipts.mark_delivered(direct.id, "bob")
        await container.receipts.mark_read(direct.id, "bob")

        message = await container.messages.get(message.id)
        assert receipt_state(message, "bob") == ReceiptState.READ
        assert set(message.read_by) <= set(message.delivered_to)

    @pytest.mark.asyncio
    async def test_non_participant_rejected(self, container, direct):
        with pytest.raises(PermissionDeniedError):
            await container.receipts.mark_read(direct.id, "mallory")
        with pytest.raises(PermissionDeniedError):
            await container.receipts.unread_count(direct.id, "mallory")


class TestUnreadCount:
    @pytest.mark.asyncio
    async def test_counts_only_unread_messages_to_user(self, container, direct):
        await send_all(container, direct.id, "alice", ["one", "two", "three"])
        await send_all(container, direct.id, "bob", ["reply"])

        assert await container.receipts.unread_count(direct.id, "bob") == 3
        assert await container.receipts.unread_count(direct.id, "alice") == 1

        await container.receipts.mark_read(direct.id, "bob")
        assert await container.receipts.unread_count(direct.id, "bob") == 0
        assert await container.receipts.unread_count(direct.id, "alice") == 1

    @pytest.mark.asyncio
    async def test_tombstones_still_count_until_read(self, container, direct):
        message, = await send_all(container, direct.id, "alice", ["regret"])
        await container.messages.mark_deleted(message.id, "alice")
        assert await container.receipts.unread_count(direct.id, "bob") == 1

    @pytest.mark.asyncio
    async def test_live_view_is_zero_as_soon_as_mark_read_returns(self, container, direct, eventually):
        subscription = container.reconciler.subscribe(direct.id, lambda view, batch: None)
        await asyncio.wait_for(subscription.ready.wait(), 1)

        await send_all(container, direct.id, "alice", ["one", "two"])
        await eventually(lambda: subscription.view.unread_count("bob") == 2)

        await container.receipts.mark_read(direct.id, "bob")
        # No await in between: the change feed has not delivered anything yet
        assert subscription.view.unread_count("bob") == 0

        # The echo from the feed keeps it at zero
        await asyncio.sleep(0.05)
        assert subscription.view.unread_count("bob") == 0
        subscription.unsubscribe()
