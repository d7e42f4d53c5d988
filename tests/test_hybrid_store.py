"""
Hybrid Store Tests
------------------
Volatile-first coordination and background reconciliation.

Tests cover:
- Deferred conversation writes and force_sync_all
- Idempotent, message-id based merge
- Re-queue of failed syncs, errors never reaching callers
- Read fallbacks to durable
- Item dual-write and merged tag search
- Eviction before sync does not lose data
- Background thread lifecycle
"""

import pytest
from pathlib import Path
import sys
import threading
import time

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import NotFoundError, RetryPolicy, UnavailableError
from memory.hybrid import DirtySet, HybridMemoryStore
from memory.volatile import VolatileMemoryStore


class TestDeferredSync:
    """Conversations reach durable only through sync."""

    def test_force_sync_all_scenario(self, hybrid, durable):
        """Create, add 3 messages, durable unaware until force_sync_all."""
        conversation = hybrid.create_conversation({"topic": "sync"})
        sent = [
            hybrid.add_message(conversation.id, {"role": "user", "content": f"message {i}"})
            for i in range(3)
        ]

        assert durable.get_conversation(conversation.id) is None

        result = hybrid.force_sync_all()

        stored = durable.get_conversation(conversation.id)
        assert result.synced == [conversation.id]
        assert [m.id for m in stored.messages] == [m.id for m in sent]
        assert [m.content for m in stored.messages] == ["message 0", "message 1", "message 2"]
        assert stored.metadata == {"topic": "sync"}

    def test_sync_is_idempotent(self, hybrid, durable):
        conversation = hybrid.create_conversation()
        hybrid.add_message(conversation.id, {"role": "user", "content": "x"})
        hybrid.force_sync_all()

        # Re-mark dirty without new messages
        hybrid._dirty.add(conversation.id)
        result = hybrid.force_sync_all()

        assert result.messages_added == 0
        assert len(durable.get_messages(conversation.id)) == 1

    def test_later_messages_merge_in(self, hybrid, durable):
        conversation = hybrid.create_conversation()
        hybrid.add_message(conversation.id, {"role": "user", "content": "one"})
        hybrid.force_sync_all()

        hybrid.add_message(conversation.id, {"role": "assistant", "content": "two"})
        hybrid.force_sync_all()

        assert [m.content for m in durable.get_messages(conversation.id)] == ["one", "two"]

    def test_clean_cycle_syncs_nothing(self, hybrid):
        result = hybrid.force_sync_all()

        assert result.synced == [] and result.failed == []

    def test_deleted_before_sync_is_skipped(self, hybrid, durable):
        conversation = hybrid.create_conversation()
        hybrid._dirty.add("already-gone")

        hybrid.delete_conversation(conversation.id)
        result = hybrid.force_sync_all()

        assert conversation.id not in result.synced
        assert result.skipped == ["already-gone"]
        assert durable.get_conversation(conversation.id) is None


class TestSyncFailures:
    """Background errors are re-queued, never raised."""

    def test_failed_sync_is_requeued(self, hybrid, durable, monkeypatch):
        conversation = hybrid.create_conversation()
        hybrid.add_message(conversation.id, {"role": "user", "content": "x"})

        def unavailable(snapshot):
            raise UnavailableError("table down")

        original = durable.merge_conversation
        monkeypatch.setattr(durable, "merge_conversation", unavailable)

        result = hybrid.force_sync_all()

        assert result.failed == [conversation.id]
        assert conversation.id in hybrid.sync_status()["pending"]

        monkeypatch.setattr(durable, "merge_conversation", original)
        retry = hybrid.force_sync_all()

        assert retry.synced == [conversation.id]
        assert len(durable.get_messages(conversation.id)) == 1

    def test_unexpected_error_is_requeued(self, hybrid, durable, monkeypatch):
        conversation = hybrid.create_conversation()

        def broken(snapshot):
            raise RuntimeError("bug")

        monkeypatch.setattr(durable, "merge_conversation", broken)

        result = hybrid.force_sync_all()

        assert result.failed == [conversation.id]
        assert conversation.id in hybrid._dirty

    def test_one_failure_does_not_block_others(self, hybrid, durable, monkeypatch):
        bad = hybrid.create_conversation()
        good = hybrid.create_conversation()
        original = durable.merge_conversation

        def selective(snapshot):
            if snapshot.id == bad.id:
                raise UnavailableError("row locked")
            return original(snapshot)

        monkeypatch.setattr(durable, "merge_conversation", selective)

        result = hybrid.force_sync_all()

        assert result.synced == [good.id]
        assert result.failed == [bad.id]


class TestReads:
    """Volatile first, durable fallback."""

    def test_get_conversation_falls_back_to_durable(self, hybrid, durable):
        stored = durable.create_conversation({"origin": "durable"})

        assert hybrid.get_conversation(stored.id).metadata == {"origin": "durable"}

    def test_missing_everywhere_returns_none(self, hybrid):
        assert hybrid.get_conversation("missing-id") is None

    def test_add_message_falls_back_to_durable(self, hybrid, durable):
        stored = durable.create_conversation()

        hybrid.add_message(stored.id, {"role": "user", "content": "late"})

        assert [m.content for m in durable.get_messages(stored.id)] == ["late"]

    def test_add_message_missing_everywhere_raises(self, hybrid):
        with pytest.raises(NotFoundError):
            hybrid.add_message("missing-id", {"role": "user", "content": "x"})

    def test_get_messages_falls_back_to_durable(self, hybrid, durable):
        stored = durable.create_conversation()
        durable.add_message(stored.id, {"role": "user", "content": "old"})

        assert [m.content for m in hybrid.get_messages(stored.id)] == ["old"]


class TestEviction:
    """Evicted-before-sync conversations still reach durable."""

    def test_evicted_dirty_conversation_is_synced(self, durable):
        hybrid = HybridMemoryStore(
            durable=durable,
            volatile=VolatileMemoryStore(max_conversations=1),
            auto_start=False,
        )
        first = hybrid.create_conversation()
        hybrid.add_message(first.id, {"role": "user", "content": "do not lose me"})
        hybrid.create_conversation()  # Evicts first

        # Still readable before the sync
        assert hybrid.get_conversation(first.id).messages[0].content == "do not lose me"

        hybrid.force_sync_all()

        assert [m.content for m in durable.get_messages(first.id)] == ["do not lose me"]
        assert hybrid.sync_status()["evicted_buffered"] == 0

    def test_message_to_evicted_conversation_is_kept(self, durable):
        hybrid = HybridMemoryStore(
            durable=durable,
            volatile=VolatileMemoryStore(max_conversations=1),
            auto_start=False,
        )
        first = hybrid.create_conversation()
        hybrid.create_conversation()  # Evicts first before any sync

        hybrid.add_message(first.id, {"role": "user", "content": "after eviction"})
        hybrid.force_sync_all()

        assert [m.content for m in durable.get_messages(first.id)] == ["after eviction"]

    def test_delete_clears_eviction_buffer(self, durable):
        hybrid = HybridMemoryStore(
            durable=durable,
            volatile=VolatileMemoryStore(max_conversations=1),
            auto_start=False,
        )
        first = hybrid.create_conversation()
        hybrid.create_conversation()

        assert hybrid.delete_conversation(first.id) is True
        hybrid.force_sync_all()

        assert durable.get_conversation(first.id) is None

    def test_supplied_volatile_store_is_used(self, durable):
        supplied = VolatileMemoryStore(max_conversations=1)

        hybrid = HybridMemoryStore(durable=durable, volatile=supplied, auto_start=False)

        assert hybrid.volatile is supplied
        assert supplied.on_evict == hybrid._buffer_evicted

    def test_reader_during_eviction_sees_conversation(self, durable):
        """A reader racing the eviction finds the conversation in one place or the other."""
        hybrid = HybridMemoryStore(
            durable=durable,
            volatile=VolatileMemoryStore(max_conversations=1),
            auto_start=False,
        )
        first = hybrid.create_conversation()
        hybrid.add_message(first.id, {"role": "user", "content": "before"})

        seen = {}

        def reader():
            seen["conversation"] = hybrid.get_conversation(first.id)
            seen["message"] = hybrid.add_message(first.id, {"role": "user", "content": "during"})

        buffer_evicted = hybrid.volatile.on_evict
        threads = []

        def on_evict(conversation):
            thread = threading.Thread(target=reader)
            thread.start()
            thread.join(0.05)  # Give the reader a chance to run mid-eviction
            threads.append(thread)
            buffer_evicted(conversation)

        hybrid.volatile.on_evict = on_evict
        hybrid.create_conversation()  # Evicts first
        for thread in threads:
            thread.join(5)

        assert seen["conversation"] is not None
        assert seen["message"].content == "during"

        hybrid.force_sync_all()

        assert [m.content for m in durable.get_messages(first.id)] == ["before", "during"]


class TestItems:
    """Dual write and merged search."""

    def test_store_item_dual_writes(self, hybrid, durable):
        hybrid.store_item("k", {"v": 1}, tags=["a"])

        assert durable.get_item("k").value == {"v": 1}
        assert hybrid.volatile.get_item("k").value == {"v": 1}

    def test_get_item_falls_back_to_durable(self, hybrid, durable):
        durable.store_item("only-durable", 7)

        assert hybrid.get_item("only-durable").value == 7

    def test_search_merges_without_duplicates(self, hybrid, durable):
        hybrid.store_item("both", "volatile-copy", tags=["t"])
        durable.store_item("both", "durable-copy", tags=["t"])
        durable.store_item("durable-only", 2, tags=["t"])

        results = {i.key: i.value for i in hybrid.search_by_tags(["t"])}

        assert results == {"both": "volatile-copy", "durable-only": 2}

    def test_search_limit_applies_to_merged(self, hybrid, durable):
        hybrid.store_item("v1", 1, tags=["t"])
        durable.store_item("d1", 2, tags=["t"])
        durable.store_item("d2", 3, tags=["t"])

        assert len(hybrid.search_by_tags(["t"], {"limit": 2})) == 2

    def test_store_item_retries_then_surfaces(self, durable, monkeypatch):
        hybrid = HybridMemoryStore(
            durable=durable,
            retry_policy=RetryPolicy(retry_delays={}),
            auto_start=False,
        )
        calls = []

        def unavailable(*args):
            calls.append(args)
            raise UnavailableError("table down")

        monkeypatch.setattr(durable, "store_item", unavailable)

        with pytest.raises(UnavailableError):
            hybrid.store_item("k", 1)

        assert len(calls) == 3  # First try plus two retries

    def test_delete_item_both(self, hybrid, durable):
        hybrid.store_item("k", 1)

        assert hybrid.delete_item("k") is True
        assert durable.get_item("k") is None
        assert hybrid.delete_item("k") is False

    def test_delete_conversation_both(self, hybrid, durable):
        conversation = hybrid.create_conversation()
        hybrid.force_sync_all()

        assert hybrid.delete_conversation(conversation.id) is True
        assert durable.get_conversation(conversation.id) is None
        assert hybrid.get_conversation(conversation.id) is None


class TestDirtySet:
    """Thread-safe pending set."""

    def test_drain_empties(self):
        dirty = DirtySet()
        dirty.update(["b", "a"])

        assert dirty.drain() == ["a", "b"]
        assert len(dirty) == 0

    def test_concurrent_adds_not_lost(self):
        dirty = DirtySet()

        def writer(n):
            for i in range(200):
                dirty.add(f"{n}-{i}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(dirty) == 1600


class TestLifecycle:
    """Background thread."""

    def test_background_thread_syncs(self, durable):
        hybrid = HybridMemoryStore(durable=durable, sync_interval_ms=20)
        try:
            conversation = hybrid.create_conversation()
            hybrid.add_message(conversation.id, {"role": "user", "content": "x"})

            deadline = time.monotonic() + 5
            while durable.get_conversation(conversation.id) is None and time.monotonic() < deadline:
                time.sleep(0.02)

            assert durable.get_conversation(conversation.id) is not None
        finally:
            hybrid.stop()

        assert not hybrid.is_running

    def test_stop_flushes_pending(self, durable):
        hybrid = HybridMemoryStore(durable=durable, auto_start=False)
        conversation = hybrid.create_conversation()

        result = hybrid.stop()

        assert result.synced == [conversation.id]
        assert durable.get_conversation(conversation.id) is not None

    def test_context_manager(self, durable):
        with HybridMemoryStore(durable=durable, auto_start=False) as hybrid:
            assert hybrid.is_running
            conversation = hybrid.create_conversation()

        assert not hybrid.is_running
        assert durable.get_conversation(conversation.id) is not None

    def test_sync_status_reports_last_result(self, hybrid):
        hybrid.create_conversation()
        hybrid.force_sync_all()

        status = hybrid.sync_status()

        assert status["pending"] == []
        assert len(status["last_result"]["synced"]) == 1
        assert status["running"] is False
