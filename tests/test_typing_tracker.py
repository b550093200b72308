"""
Tests for typing indicators.

Tests cover:
- The pure staleness rule at its boundaries
- Expiry without any further writes (local and remote keystrokes)
- Explicit clears and debounced remote writes
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from choptso.config import Settings
from choptso.core.exceptions import PermissionDeniedError
from choptso.dependencies import ServiceContainer
from choptso.models.conversation import COLLECTION
from choptso.services.typing_tracker import TypingTracker, active_typers, next_expiry


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class Changes:
    """Records typing sets with the loop time they arrived at."""

    def __init__(self):
        self.events = []

    def __call__(self, users):
        self.events.append((asyncio.get_running_loop().time(), set(users)))

    @property
    def sets(self):
        return [users for _, users in self.events]


class TestStalenessRule:
    def test_boundary_is_inclusive(self):
        typing_users = {"alice": T0}
        assert active_typers(typing_users, T0 + timedelta(milliseconds=3000)) == {"alice"}
        assert active_typers(typing_users, T0 + timedelta(milliseconds=3001)) == frozenset()

    def test_ignores_non_timestamps(self):
        assert active_typers({"alice": None, "bob": T0}, T0) == {"bob"}

    def test_next_expiry_is_soonest_active_entry(self):
        typing_users = {"alice": T0, "bob": T0 + timedelta(seconds=1), "carol": T0 - timedelta(seconds=10)}
        assert next_expiry(typing_users, T0 + timedelta(seconds=1)) == pytest.approx(2.0)
        assert next_expiry({"carol": T0}, T0 + timedelta(seconds=4)) is None


class TestSetTyping:
    @pytest.mark.asyncio
    async def test_typing_disappears_after_window_without_clear(self, container, direct, eventually):
        changes = Changes()
        subscription = container.typing.on_typing_change(direct.id, changes)
        await asyncio.wait_for(subscription.ready.wait(), 1)

        started = asyncio.get_running_loop().time()
        await container.typing.set_typing(direct.id, "alice", True)
        await eventually(lambda: changes.sets == [{"alice"}], timeout=1)

        await eventually(lambda: len(changes.events) == 2, timeout=4)
        stopped_at, users = changes.events[1]
        assert users == set()
        assert 2.95 <= stopped_at - started <= 3.2
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_clear_is_immediate_and_removes_remote_entry(self, container, direct, eventually):
        changes = Changes()
        subscription = container.typing.on_typing_change(direct.id, changes)
        await asyncio.wait_for(subscription.ready.wait(), 1)

        await container.typing.set_typing(direct.id, "alice", True)
        await container.typing.set_typing(direct.id, "alice", False)

        await eventually(lambda: changes.sets == [{"alice"}, set()], timeout=0.5)
        doc = await container.store.get(COLLECTION, direct.id)
        assert "alice" not in (doc.get("typing_users") or {})
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_repeated_keystrokes_write_once(self, container, direct, monkeypatch):
        calls = []
        update_one = container.store.update_one

        async def counting_update_one(collection, filters, update):
            calls.append(update)
            return await update_one(collection, filters, update)

        monkeypatch.setattr(container.store, "update_one", counting_update_one)

        for _ in range(5):
            await container.typing.set_typing(direct.id, "alice", True)
        assert len(calls) == 1
        assert "$set" in calls[0]

        await container.typing.set_typing(direct.id, "alice", False)
        assert len(calls) == 2
        assert "$unset" in calls[1]

    @pytest.mark.asyncio
    async def test_debounced_keystroke_written_when_window_ends(self, container, direct, monkeypatch):
        calls = []
        update_one = container.store.update_one

        async def counting_update_one(collection, filters, update):
            calls.append(update)
            return await update_one(collection, filters, update)

        monkeypatch.setattr(container.store, "update_one", counting_update_one)
        tracker = TypingTracker(
            container.store, container.conversations, container.reconciler, debounce_ms=100
        )

        await tracker.set_typing(direct.id, "alice", True)
        await asyncio.sleep(0.02)
        await tracker.set_typing(direct.id, "alice", True)
        await tracker.set_typing(direct.id, "alice", True)
        assert len(calls) == 1

        await asyncio.sleep(0.2)
        assert len(calls) == 2
        first = calls[0]["$set"]["typing_users.alice"]
        renewed = calls[1]["$set"]["typing_users.alice"]
        assert renewed > first
        tracker.close()

    @pytest.mark.asyncio
    async def test_clear_cancels_pending_renewal(self, container, direct, monkeypatch):
        calls = []
        update_one = container.store.update_one

        async def counting_update_one(collection, filters, update):
            calls.append(update)
            return await update_one(collection, filters, update)

        monkeypatch.setattr(container.store, "update_one", counting_update_one)
        tracker = TypingTracker(
            container.store, container.conversations, container.reconciler, debounce_ms=100
        )

        await tracker.set_typing(direct.id, "alice", True)
        await tracker.set_typing(direct.id, "alice", True)
        await tracker.set_typing(direct.id, "alice", False)
        await asyncio.sleep(0.2)

        assert [list(update) for update in calls] == [["$set"], ["$unset"]]
        doc = await container.store.get(COLLECTION, direct.id)
        assert "alice" not in (doc.get("typing_users") or {})

    @pytest.mark.asyncio
    async def test_current_typers(self, container, direct):
        await container.typing.set_typing(direct.id, "bob", True)
        assert await container.typing.current_typers(direct.id) == {"bob"}

    @pytest.mark.asyncio
    async def test_non_participant_rejected(self, container, direct):
        with pytest.raises(PermissionDeniedError):
            await container.typing.set_typing(direct.id, "mallory", True)


class TestRemoteTyping:
    @pytest.mark.asyncio
    async def test_stale_remote_entry_never_reported(self, container, direct):
        stale = container.store.now() - timedelta(seconds=10)
        await container.store.update_one(
            COLLECTION, {"id": direct.id}, {"$set": {"typing_users.bob": stale}}
        )

        changes = Changes()
        subscription = container.typing.on_typing_change(direct.id, changes)
        await asyncio.wait_for(subscription.ready.wait(), 1)
        await asyncio.sleep(0.05)

        assert changes.events == []
        assert await container.typing.current_typers(direct.id) == frozenset()
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_other_process_keystroke_expires_on_timer(self, container, direct, eventually):
        """A writer elsewhere that never clears still disappears on time."""
        reader = TypingTracker(
            container.store, container.conversations, container.reconciler, timeout_ms=300
        )
        writer = TypingTracker(
            container.store, container.conversations, container.reconciler, timeout_ms=300
        )
        changes = Changes()
        subscription = reader.on_typing_change(direct.id, changes)
        await asyncio.wait_for(subscription.ready.wait(), 1)

        await writer.set_typing(direct.id, "bob", True)
        await eventually(lambda: changes.sets == [{"bob"}], timeout=0.5)
        await eventually(lambda: changes.sets == [{"bob"}, set()], timeout=1)

        (seen_at, _), (expired_at, _) = changes.events
        assert expired_at - seen_at <= 0.35
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_timer(self, container, direct):
        changes = Changes()
        tracker = TypingTracker(
            container.store, container.conversations, container.reconciler, timeout_ms=100
        )
        subscription = tracker.on_typing_change(direct.id, changes)
        await asyncio.wait_for(subscription.ready.wait(), 1)
        await tracker.set_typing(direct.id, "alice", True)
        await asyncio.sleep(0.01)

        subscription.unsubscribe()
        count = len(changes.events)
        await asyncio.sleep(0.2)
        assert len(changes.events) == count

    @pytest.mark.asyncio
    async def test_renewed_keystroke_keeps_typer_visible_in_another_container(self, store, direct, eventually):
        config = Settings(
            STORE_BACKEND="memory",
            REDIS_URL="",
            TYPING_TIMEOUT_MS=600,
            TYPING_WRITE_DEBOUNCE_MS=300,
        )
        writer = ServiceContainer(config=config, store=store)
        reader = ServiceContainer(config=config, store=store)
        changes = Changes()
        subscription = reader.typing.on_typing_change(direct.id, changes)
        await asyncio.wait_for(subscription.ready.wait(), 1)

        await writer.typing.set_typing(direct.id, "alice", True)
        await eventually(lambda: changes.sets == [{"alice"}], timeout=0.5)
        await asyncio.sleep(0.2)
        await writer.typing.set_typing(direct.id, "alice", True)  # debounced
        renewed_at = asyncio.get_running_loop().time()

        await eventually(lambda: changes.sets == [{"alice"}, set()], timeout=2)
        expired_at, _ = changes.events[1]
        assert 0.55 <= expired_at - renewed_at <= 0.75

        for services in (writer, reader):
            services.typing.close()
            await services.registry.close()
