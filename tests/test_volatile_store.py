"""
Volatile Store Tests
--------------------
Bounded in-process storage.

Tests cover:
- Conversation capacity and oldest-created eviction
- Per-conversation message trimming
- Lazy TTL purge on get_item and search_by_tags
- AND-semantics tag search
- Snapshot isolation and thread safety
"""

import pytest
from datetime import datetime, timezone
from pathlib import Path
import sys
import threading

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import NotFoundError
from memory.models import Conversation, MessageRole
from memory.volatile import VolatileMemoryStore


class TestConversations:
    """Creation, lookup and messages."""

    def test_create_and_get(self, volatile):
        created = volatile.create_conversation({"topic": "x"})

        fetched = volatile.get_conversation(created.id)

        assert fetched.id == created.id
        assert fetched.metadata == {"topic": "x"}
        assert fetched.messages == []

    def test_missing_conversation_returns_none(self, volatile):
        assert volatile.get_conversation("missing-id") is None

    def test_add_message_assigns_id_and_keeps_order(self, volatile):
        conversation = volatile.create_conversation()

        first = volatile.add_message(conversation.id, {"role": "user", "content": "one"})
        second = volatile.add_message(conversation.id, {"role": "assistant", "content": "two"})

        messages = volatile.get_messages(conversation.id)
        assert [m.id for m in messages] == [first.id, second.id]
        assert messages[1].role == MessageRole.ASSISTANT

    def test_add_message_unknown_conversation_raises(self, volatile):
        with pytest.raises(NotFoundError):
            volatile.add_message("missing-id", {"role": "user", "content": "x"})

    def test_get_messages_unknown_conversation_raises(self, volatile):
        with pytest.raises(NotFoundError):
            volatile.get_messages("missing-id")

    def test_get_messages_limit(self, volatile):
        conversation = volatile.create_conversation()
        for i in range(5):
            volatile.add_message(conversation.id, {"role": "user", "content": str(i)})

        messages = volatile.get_messages(conversation.id, {"limit": 2})

        assert [m.content for m in messages] == ["3", "4"]

    def test_snapshot_cannot_mutate_store(self, volatile):
        conversation = volatile.create_conversation()
        volatile.add_message(conversation.id, {"role": "user", "content": "x"})

        snapshot = volatile.get_conversation(conversation.id)
        snapshot.messages.clear()
        snapshot.metadata["tampered"] = True

        fresh = volatile.get_conversation(conversation.id)
        assert len(fresh.messages) == 1
        assert "tampered" not in fresh.metadata

    def test_delete_conversation(self, volatile):
        conversation = volatile.create_conversation()

        assert volatile.delete_conversation(conversation.id) is True
        assert volatile.delete_conversation(conversation.id) is False
        assert volatile.get_conversation(conversation.id) is None


class TestEviction:
    """Capacity bounds."""

    def test_oldest_created_is_evicted(self):
        store = VolatileMemoryStore(max_conversations=2)
        first = store.create_conversation()
        second = store.create_conversation()
        store.add_message(first.id, {"role": "user", "content": "recent activity"})

        third = store.create_conversation()

        # Activity does not matter, only creation order
        assert store.get_conversation(first.id) is None
        assert store.get_conversation(second.id) is not None
        assert store.get_conversation(third.id) is not None
        assert len(store) == 2

    def test_equal_created_at_evicts_first_inserted(self):
        store = VolatileMemoryStore(max_conversations=2)
        stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
        store.put_conversation(Conversation(id="a", created_at=stamp, updated_at=stamp))
        store.put_conversation(Conversation(id="b", created_at=stamp, updated_at=stamp))

        store.create_conversation()

        assert store.get_conversation("a") is None
        assert store.get_conversation("b") is not None

    def test_on_evict_receives_snapshot(self):
        evicted = []
        store = VolatileMemoryStore(max_conversations=1, on_evict=evicted.append)
        first = store.create_conversation()
        store.add_message(first.id, {"role": "user", "content": "keep me"})

        store.create_conversation()

        assert [c.id for c in evicted] == [first.id]
        assert evicted[0].messages[0].content == "keep me"

    def test_message_bound_trims_oldest(self):
        store = VolatileMemoryStore(max_messages=3)
        conversation = store.create_conversation()
        for i in range(5):
            store.add_message(conversation.id, {"role": "user", "content": str(i)})

        messages = store.get_messages(conversation.id)

        assert [m.content for m in messages] == ["2", "3", "4"]

    def test_invalid_bounds_rejected(self):
        with pytest.raises(ValueError):
            VolatileMemoryStore(max_messages=0)


class TestItems:
    """Key/value items."""

    def test_round_trip(self, volatile):
        volatile.store_item("profile", {"name": "Ada", "langs": ["py"]}, tags=["user"])

        item = volatile.get_item("profile")

        assert item.value == {"name": "Ada", "langs": ["py"]}
        assert item.tags == ["user"]

    def test_restore_overwrites_and_keeps_created_at(self, volatile):
        first = volatile.store_item("k", 1, tags=["a"])
        second = volatile.store_item("k", 2, tags=["b"])

        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert volatile.get_item("k").value == 2
        assert volatile.search_by_tags(["a"]) == []
        assert len(volatile.list_items()) == 1

    def test_missing_item_returns_none(self, volatile):
        assert volatile.get_item("nope") is None

    def test_expired_item_is_purged_on_read(self, volatile, clock):
        volatile.store_item("session", "token", tags=["auth"], ttl=clock.now + 10)
        assert volatile.get_item("session") is not None

        clock.advance(11)

        assert volatile.get_item("session") is None
        assert volatile.stats()["items"] == 0

    def test_expired_item_absent_from_search(self, volatile, clock):
        volatile.store_item("old", 1, tags=["a"], ttl=clock.now - 1)
        volatile.store_item("new", 2, tags=["a"])

        results = volatile.search_by_tags(["a"])

        assert [i.key for i in results] == ["new"]

    def test_search_is_and(self, volatile):
        volatile.store_item("only-a", 1, tags=["a"])
        volatile.store_item("both", 2, tags=["a", "b"])

        assert [i.key for i in volatile.search_by_tags(["a", "b"])] == ["both"]

    def test_search_empty_tags(self, volatile):
        volatile.store_item("k", 1, tags=["a"])

        assert volatile.search_by_tags([]) == []

    def test_search_limit(self, volatile):
        for i in range(4):
            volatile.store_item(f"k{i}", i, tags=["t"])

        assert len(volatile.search_by_tags(["t"], {"limit": 2})) == 2

    def test_returned_item_cannot_mutate_tags(self, volatile):
        volatile.store_item("k", 1, tags=["a"])

        volatile.get_item("k").tags.append("b")

        assert volatile.get_item("k").tags == ["a"]

    def test_delete_item(self, volatile):
        volatile.store_item("k", 1)

        assert volatile.delete_item("k") is True
        assert volatile.delete_item("k") is False


class TestConcurrency:
    """Concurrent callers."""

    def test_concurrent_store_same_key_leaves_one_item(self, volatile):
        def writer(n):
            for i in range(50):
                volatile.store_item("shared", n * 100 + i, tags=["t"])

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(volatile.list_items()) == 1
        assert len(volatile.search_by_tags(["t"])) == 1

    def test_concurrent_appends_are_not_lost(self):
        store = VolatileMemoryStore(max_messages=1000)
        conversation = store.create_conversation()

        def writer():
            for i in range(50):
                store.add_message(conversation.id, {"role": "user", "content": str(i)})

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.get_messages(conversation.id)) == 200
