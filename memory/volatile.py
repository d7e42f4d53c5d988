"""
Volatile Memory Store
---------------------
Bounded in-process conversation and item storage.

Rules:
- Fixed capacity: at most max_conversations conversations
- Eviction by oldest created_at (single scan, ties by insertion order)
- At most max_messages per conversation, oldest trimmed first
- Item TTL is checked lazily on read; expired items are purged there
- Returned conversations are snapshots; callers cannot mutate the store
"""

from typing import Any, Callable, Dict, Iterable, List, Optional
import logging
import threading

from core.errors import NotFoundError

from .base import MessageInput, OptionsInput, validate_key
from .models import (
    Conversation, Item, Message, MessageDraft, QueryOptions,
    normalize_tags, now_seconds, utc_now,
)

EvictionCallback = Callable[[Conversation], None]


class VolatileMemoryStore:
    """
    In-process memory store.

    Thread-safe: one re-entrant lock guards both maps. The eviction
    callback runs while the lock is held and must not wait on a thread
    that is itself waiting on this store.
    """

    def __init__(
        self,
        max_messages: int = 100,
        max_conversations: int = 10,
        on_evict: Optional[EvictionCallback] = None,
    ):
        if max_messages < 1 or max_conversations < 1:
            raise ValueError("max_messages and max_conversations must be positive")

        self.max_messages = max_messages
        self.max_conversations = max_conversations
        self.on_evict = on_evict

        self._conversations: Dict[str, Conversation] = {}
        self._items: Dict[str, Item] = {}
        self._lock = threading.RLock()
        self._logger = logging.getLogger("agentmem.memory.volatile")

    @classmethod
    def from_config(cls, config: Any, on_evict: Optional[EvictionCallback] = None) -> "VolatileMemoryStore":
        """Build from a VolatileConfig."""
        return cls(
            max_messages=config.max_messages,
            max_conversations=config.max_conversations,
            on_evict=on_evict,
        )

    # ===== Conversations =====

    def create_conversation(self, metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        """Create a conversation, evicting the oldest one when at capacity."""
        conversation = Conversation(metadata=dict(metadata or {}))

        with self._lock:
            evicted = self._make_room()
            self._conversations[conversation.id] = conversation
            snapshot = conversation.copy()
            self._notify_evicted(evicted)

        self._logger.debug(f"Created conversation {conversation.id}")
        return snapshot

    def put_conversation(self, conversation: Conversation) -> Conversation:
        """Insert or replace a whole conversation, keeping its ids."""
        stored = conversation.copy()
        if len(stored.messages) > self.max_messages:
            stored.messages = stored.messages[-self.max_messages:]

        evicted: List[Conversation] = []
        with self._lock:
            if stored.id not in self._conversations:
                evicted = self._make_room()
            self._conversations[stored.id] = stored
            snapshot = stored.copy()
            self._notify_evicted(evicted)

        return snapshot

    def _make_room(self) -> List[Conversation]:
        """Evict oldest conversations until one more fits. Caller holds the lock."""
        evicted = []
        while len(self._conversations) >= self.max_conversations:
            # min() keeps the first of equal keys, so ties go to insertion order
            oldest = min(self._conversations.values(), key=lambda c: c.created_at)
            del self._conversations[oldest.id]
            evicted.append(oldest)
            self._logger.debug(f"Evicted conversation {oldest.id} (capacity {self.max_conversations})")
        return evicted

    def _notify_evicted(self, evicted: List[Conversation]) -> None:
        """Hand evicted conversations to on_evict. Caller holds the lock."""
        if self.on_evict is None:
            return
        for conversation in evicted:
            self.on_evict(conversation)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.copy() if conversation else None

    def has_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._conversations

    def add_message(self, conversation_id: str, message: MessageInput) -> Message:
        """Append a message. Raises NotFoundError for an unknown conversation."""
        draft = MessageDraft.coerce(message)

        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError(
                    f"Conversation {conversation_id} not found",
                    details={"conversation_id": conversation_id},
                )

            new_message = draft.to_message()
            conversation.append(new_message)

            if len(conversation.messages) > self.max_messages:
                trimmed = len(conversation.messages) - self.max_messages
                conversation.messages = conversation.messages[-self.max_messages:]
                self._logger.debug(f"Trimmed {trimmed} messages from {conversation_id}")

        return new_message

    def get_messages(self, conversation_id: str, options: OptionsInput = None) -> List[Message]:
        """Messages in append order, filtered by time window and limit."""
        query = QueryOptions.coerce(options)
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError(
                    f"Conversation {conversation_id} not found",
                    details={"conversation_id": conversation_id},
                )
            messages = list(conversation.messages)
        return query.filter_messages(messages)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            removed = self._conversations.pop(conversation_id, None)
        if removed is not None:
            self._logger.debug(f"Deleted conversation {conversation_id}")
        return removed is not None

    def list_conversations(self, limit: Optional[int] = None) -> List[Conversation]:
        """Snapshots of held conversations in insertion order."""
        with self._lock:
            conversations = [c.copy() for c in self._conversations.values()]
        return conversations[:limit] if limit else conversations

    # ===== Items =====

    def store_item(
        self,
        key: str,
        value: Any,
        tags: Optional[Iterable[str]] = None,
        ttl: Optional[int] = None,
    ) -> Item:
        """Store or overwrite an item. created_at survives an overwrite."""
        validate_key(key)
        tag_list = normalize_tags(tags)

        with self._lock:
            existing = self._items.get(key)
            now = utc_now()
            item = Item(
                key=key,
                value=value,
                tags=tag_list,
                ttl=ttl,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._items[key] = item

        self._logger.debug(f"Stored item {key} (tags={tag_list})")
        return item.copy()

    def get_item(self, key: str) -> Optional[Item]:
        """Get an item; an expired one is deleted and None returned."""
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            if item.is_expired():
                del self._items[key]
                self._logger.debug(f"Purged expired item {key}")
                return None
            return item.copy()

    def search_by_tags(self, tags: Iterable[str], options: OptionsInput = None) -> List[Item]:
        """Items carrying every tag, expired ones purged along the way."""
        wanted = normalize_tags(tags)
        if not wanted:
            return []
        query = QueryOptions.coerce(options)

        results = []
        with self._lock:
            now = now_seconds()
            for item in list(self._items.values()):
                if item.is_expired(now):
                    del self._items[item.key]
                    self._logger.debug(f"Purged expired item {item.key}")
                    continue
                if item.has_tags(wanted):
                    results.append(item.copy())

        return query.limit_items(results)

    def delete_item(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def list_items(self, limit: Optional[int] = None) -> List[Item]:
        """Live (unexpired) items in insertion order."""
        with self._lock:
            now = now_seconds()
            items = [i.copy() for i in self._items.values() if not i.is_expired(now)]
        return items[:limit] if limit else items

    # ===== Introspection =====

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "conversations": len(self._conversations),
                "messages": sum(len(c.messages) for c in self._conversations.values()),
                "items": len(self._items),
                "max_conversations": self.max_conversations,
                "max_messages": self.max_messages,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)
