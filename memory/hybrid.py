"""
Hybrid Memory Store
-------------------
Volatile store in front, durable store behind, reconciled by a
background sync loop.

Design:
- Conversations are written to the volatile store and marked dirty;
  the durable copy catches up on the next sync cycle
- Items are dual-written synchronously
- Reads try volatile first, then durable
- One sync cycle at a time; conversations within a cycle are
  reconciled one after another
- Reconciliation merges by message id, so re-applying is harmless
- A conversation evicted before it was synced is buffered and still
  reconciled on the next cycle
- Sync failures are logged and re-queued, never raised to callers
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set
import logging
import threading

from core.errors import MemoryStoreError, NotFoundError, RetryPolicy, call_with_retry
from infra.logging import OperationContext

from .base import MessageInput, OptionsInput
from .durable import DurableMemoryStore
from .models import Conversation, Item, Message, MessageDraft, QueryOptions, normalize_tags
from .volatile import VolatileMemoryStore

DEFAULT_SYNC_INTERVAL_MS = 60_000


class DirtySet:
    """Thread-safe set of conversation ids awaiting sync."""

    def __init__(self):
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, conversation_id: str) -> None:
        with self._lock:
            self._ids.add(conversation_id)

    def update(self, conversation_ids: Iterable[str]) -> None:
        with self._lock:
            self._ids.update(conversation_ids)

    def discard(self, conversation_id: str) -> None:
        with self._lock:
            self._ids.discard(conversation_id)

    def drain(self) -> List[str]:
        """Take every pending id, leaving the set empty."""
        with self._lock:
            ids = sorted(self._ids)
            self._ids.clear()
            return ids

    def snapshot(self) -> List[str]:
        with self._lock:
            return sorted(self._ids)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


@dataclass
class SyncResult:
    """Outcome of one reconciliation cycle."""
    synced: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # Deleted before the cycle reached them
    messages_added: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": list(self.synced),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "messages_added": self.messages_added,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class HybridMemoryStore:
    """
    Coordinator over an owned volatile store and durable store.

    The background thread starts on construction unless auto_start is
    False; stop() joins it and, by default, runs a final flush.
    """

    def __init__(
        self,
        durable: DurableMemoryStore,
        volatile: Optional[VolatileMemoryStore] = None,
        sync_interval_ms: int = DEFAULT_SYNC_INTERVAL_MS,
        retry_policy: Optional[RetryPolicy] = None,
        auto_start: bool = True,
    ):
        if sync_interval_ms < 1:
            raise ValueError("sync_interval_ms must be positive")

        self.volatile = volatile if volatile is not None else VolatileMemoryStore()
        self.durable = durable
        self.sync_interval_ms = sync_interval_ms
        self.retry_policy = retry_policy or RetryPolicy()

        self._dirty = DirtySet()
        self._evicted: Dict[str, Conversation] = {}
        self._evicted_lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_result: Optional[SyncResult] = None
        self._logger = logging.getLogger("agentmem.memory.hybrid")

        self.volatile.on_evict = self._buffer_evicted

        if auto_start:
            self.start()

    # ===== Lifecycle =====

    def start(self) -> None:
        """Start the background sync thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sync_loop,
            name="agentmem-hybrid-sync",
            daemon=True,
        )
        self._thread.start()
        self._logger.info(f"Background sync started (interval {self.sync_interval_ms}ms)")

    def stop(self, flush: bool = True, timeout: Optional[float] = None) -> Optional[SyncResult]:
        """Stop the sync thread. With flush, run one last cycle and return its result."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            self._logger.info("Background sync stopped")
        return self.force_sync_all() if flush else None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> "HybridMemoryStore":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    def _sync_loop(self) -> None:
        interval = self.sync_interval_ms / 1000
        while not self._stop_event.wait(interval):
            self._run_cycle()

    # ===== Eviction buffer =====

    def _buffer_evicted(self, conversation: Conversation) -> None:
        """Keep an evicted conversation until the next cycle writes it through."""
        with self._evicted_lock:
            self._evicted[conversation.id] = conversation
        self._dirty.add(conversation.id)
        self._logger.debug(f"Buffered evicted conversation {conversation.id} for sync")

    def _buffered(self, conversation_id: str) -> Optional[Conversation]:
        with self._evicted_lock:
            conversation = self._evicted.get(conversation_id)
            return conversation.copy() if conversation else None

    # ===== Sync =====

    def force_sync_all(self) -> SyncResult:
        """Reconcile every pending conversation now, on the calling thread."""
        return self._run_cycle()

    def _run_cycle(self) -> SyncResult:
        with self._sync_lock, OperationContext():
            result = SyncResult()
            for conversation_id in self._dirty.drain():
                self._sync_one(conversation_id, result)
            result.finished_at = datetime.now(timezone.utc)
            self._last_result = result

        if result.synced or result.failed:
            self._logger.info(
                f"Sync cycle: {len(result.synced)} synced, {len(result.failed)} failed, "
                f"{result.messages_added} messages added",
                extra={"synced": len(result.synced), "failed": len(result.failed)},
            )
        return result

    def _sync_one(self, conversation_id: str, result: SyncResult) -> None:
        """Merge one conversation into durable. Caller holds the sync lock."""
        snapshot = self.volatile.get_conversation(conversation_id)
        from_buffer = False
        if snapshot is None:
            snapshot = self._buffered(conversation_id)
            from_buffer = snapshot is not None
        if snapshot is None:
            result.skipped.append(conversation_id)
            return

        try:
            result.messages_added += self.durable.merge_conversation(snapshot)
        except MemoryStoreError as e:
            self._requeue(conversation_id, result)
            self._logger.warning(
                f"Sync of {conversation_id} failed ({e.category.name}), re-queued: {e}",
                extra={"conversation_id": conversation_id},
            )
            return
        except Exception as e:
            self._requeue(conversation_id, result)
            self._logger.error(
                f"Unexpected error syncing {conversation_id}, re-queued: {e}",
                exc_info=True,
                extra={"conversation_id": conversation_id},
            )
            return

        if from_buffer:
            with self._evicted_lock:
                # A message may have been appended to the buffer meanwhile
                current = self._evicted.get(conversation_id)
                if current is not None and len(current.messages) == len(snapshot.messages):
                    del self._evicted[conversation_id]
                elif current is not None:
                    self._dirty.add(conversation_id)
        result.synced.append(conversation_id)

    def _requeue(self, conversation_id: str, result: SyncResult) -> None:
        result.failed.append(conversation_id)
        self._dirty.add(conversation_id)

    def sync_status(self) -> Dict[str, Any]:
        with self._evicted_lock:
            buffered = len(self._evicted)
        return {
            "running": self.is_running,
            "interval_ms": self.sync_interval_ms,
            "pending": self._dirty.snapshot(),
            "evicted_buffered": buffered,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }

    def _durable_call(self, func, *args, operation: str = ""):
        return call_with_retry(func, *args, policy=self.retry_policy, operation=operation)

    # ===== Conversations =====

    def create_conversation(self, metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        conversation = self.volatile.create_conversation(metadata)
        self._dirty.add(conversation.id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Volatile, then the eviction buffer, then durable."""
        conversation = self.volatile.get_conversation(conversation_id)
        if conversation is not None:
            return conversation
        conversation = self._buffered(conversation_id)
        if conversation is not None:
            return conversation
        return self._durable_call(self.durable.get_conversation, conversation_id, operation="get_conversation")

    def add_message(self, conversation_id: str, message: MessageInput) -> Message:
        """
        Append to volatile and mark dirty. A conversation volatile no longer
        holds is appended in the eviction buffer or, failing that, in durable.
        """
        draft = MessageDraft.coerce(message)
        try:
            new_message = self.volatile.add_message(conversation_id, draft)
            self._dirty.add(conversation_id)
            return new_message
        except NotFoundError:
            pass

        with self._evicted_lock:
            buffered = self._evicted.get(conversation_id)
            if buffered is not None:
                new_message = draft.to_message()
                buffered.append(new_message)
        if buffered is not None:
            self._dirty.add(conversation_id)
            return new_message

        return self._durable_call(self.durable.add_message, conversation_id, draft, operation="add_message")

    def get_messages(self, conversation_id: str, options: OptionsInput = None) -> List[Message]:
        try:
            return self.volatile.get_messages(conversation_id, options)
        except NotFoundError:
            pass
        buffered = self._buffered(conversation_id)
        if buffered is not None:
            return QueryOptions.coerce(options).filter_messages(buffered.messages)
        return self._durable_call(self.durable.get_messages, conversation_id, options, operation="get_messages")

    def delete_conversation(self, conversation_id: str) -> bool:
        """
        Delete from both stores. Waits for a running sync cycle so a
        deleted conversation is never written back.
        """
        with self._sync_lock:
            self._dirty.discard(conversation_id)
            with self._evicted_lock:
                buffered = self._evicted.pop(conversation_id, None)
            in_volatile = self.volatile.delete_conversation(conversation_id)
            in_durable = self._durable_call(
                self.durable.delete_conversation, conversation_id, operation="delete_conversation"
            )
        return in_volatile or in_durable or buffered is not None

    # ===== Items =====

    def store_item(
        self,
        key: str,
        value: Any,
        tags: Optional[Iterable[str]] = None,
        ttl: Optional[int] = None,
    ) -> Item:
        """Dual write: volatile, then durable before returning."""
        tag_list = normalize_tags(tags)
        item = self.volatile.store_item(key, value, tag_list, ttl)
        self._durable_call(self.durable.store_item, key, value, tag_list, ttl, operation="store_item")
        return item

    def get_item(self, key: str) -> Optional[Item]:
        item = self.volatile.get_item(key)
        if item is not None:
            return item
        return self._durable_call(self.durable.get_item, key, operation="get_item")

    def search_by_tags(self, tags: Iterable[str], options: OptionsInput = None) -> List[Item]:
        """Union of both stores; volatile wins on key collision; limit applies last."""
        wanted = normalize_tags(tags)
        if not wanted:
            return []
        query = QueryOptions.coerce(options)

        merged: Dict[str, Item] = {}
        for item in self.volatile.search_by_tags(wanted):
            merged[item.key] = item
        for item in self._durable_call(self.durable.search_by_tags, wanted, operation="search_by_tags"):
            merged.setdefault(item.key, item)

        return query.limit_items(list(merged.values()))

    def delete_item(self, key: str) -> bool:
        in_volatile = self.volatile.delete_item(key)
        in_durable = self._durable_call(self.durable.delete_item, key, operation="delete_item")
        return in_volatile or in_durable

    def stats(self) -> Dict[str, Any]:
        return {
            "volatile": self.volatile.stats(),
            "durable": self.durable.stats(),
            "sync": self.sync_status(),
        }
