"""
Durable Memory Store
--------------------
Conversation and item storage over the keyed table.

Record layout (one namespace):
    CONV#<id>          -> conversation blob
    ITEM#<key>         -> item blob (ttl column mirrors the item ttl)
    TAG#<tag>#<key>    -> tag pointer, value is the item key; "%" and "#"
                          in tag and key are escaped as %25 and %23

Rules:
- Every write is one table transaction; nothing partial is ever visible
- Tag search trusts the index only as a candidate list: every candidate
  is re-checked against the item it points to
- Table failures surface as UnavailableError; this store never retries
- Expired items are purged in a transaction that re-reads the blob, so
  a concurrent re-store is never deleted
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from core.errors import NotFoundError
from infra.kv_table import DEFAULT_PAGE_SIZE, DEFAULT_TABLE_NAME, KeyValueTable, TableRecord

from .base import MessageInput, OptionsInput, validate_key
from .models import (
    Conversation, Item, Message, MessageDraft, QueryOptions,
    normalize_tags, now_seconds, utc_now,
)

CONVERSATION_PREFIX = "CONV#"
ITEM_PREFIX = "ITEM#"
TAG_PREFIX = "TAG#"


def conversation_key(conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def item_key(key: str) -> str:
    return f"{ITEM_PREFIX}{key}"


def escape_key_part(part: str) -> str:
    """Escape the separator so tag pointer keys stay unambiguous."""
    return part.replace("%", "%25").replace("#", "%23")


def tag_key(tag: str, key: str) -> str:
    return f"{TAG_PREFIX}{escape_key_part(tag)}#{escape_key_part(key)}"


def tag_prefix(tag: str) -> str:
    return f"{TAG_PREFIX}{escape_key_part(tag)}#"


class DurableMemoryStore:
    """
    Keyed-table memory store.

    The table is opened (and migrated) on construction.
    """

    def __init__(
        self,
        table_name: str = DEFAULT_TABLE_NAME,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        table: Optional[KeyValueTable] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.table = table or KeyValueTable(table_name, endpoint=endpoint, region=region)
        self.table.initialize()
        self.page_size = page_size
        self._logger = logging.getLogger("agentmem.memory.durable")

    @classmethod
    def from_config(cls, config: Any) -> "DurableMemoryStore":
        """Build from a DurableConfig."""
        return cls(
            table_name=config.table_name or DEFAULT_TABLE_NAME,
            region=config.region,
            endpoint=config.endpoint,
        )

    def close(self) -> None:
        self.table.close()

    # ===== Conversations =====

    def _conversation_record(self, conversation: Conversation) -> TableRecord:
        return TableRecord(
            key=conversation_key(conversation.id),
            kind="conversation",
            value=conversation.to_dict(),
            created_at=conversation.created_at.isoformat(),
            updated_at=conversation.updated_at.isoformat(),
        )

    def create_conversation(self, metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        conversation = Conversation(metadata=dict(metadata or {}))
        self.table.put(self._conversation_record(conversation))
        self._logger.debug(f"Created conversation {conversation.id}")
        return conversation

    def put_conversation(self, conversation: Conversation) -> Conversation:
        """Insert or replace a whole conversation blob, keeping its ids."""
        self.table.put(self._conversation_record(conversation))
        return conversation.copy()

    def merge_conversation(self, conversation: Conversation) -> int:
        """
        Reconcile a conversation snapshot into its stored blob, atomically.

        Absent: stored whole. Present: messages whose id is not already
        stored are appended in snapshot order, metadata keys from the
        snapshot win, and the later updated_at is kept. Re-applying the
        same snapshot appends nothing. Returns the number of messages added.
        """
        added: List[int] = []

        def plan(record: Optional[TableRecord]) -> Tuple[List[TableRecord], List[str]]:
            if record is None:
                added.append(len(conversation.messages))
                return [self._conversation_record(conversation)], []

            stored = Conversation.from_dict(record.value)
            known = stored.message_ids()
            new_messages = [m for m in conversation.messages if m.id not in known]
            stored.messages.extend(new_messages)
            stored.metadata.update(conversation.metadata)
            stored.updated_at = max(stored.updated_at, conversation.updated_at)
            added.append(len(new_messages))
            return [self._conversation_record(stored)], []

        self.table.update(conversation_key(conversation.id), plan)
        return added[0]

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        record = self.table.get(conversation_key(conversation_id))
        if record is None:
            return None
        return Conversation.from_dict(record.value)

    def add_message(self, conversation_id: str, message: MessageInput) -> Message:
        """Append a message in a read-modify-write transaction."""
        draft = MessageDraft.coerce(message)
        new_message = draft.to_message()

        def plan(record: Optional[TableRecord]) -> Tuple[List[TableRecord], List[str]]:
            if record is None:
                raise NotFoundError(
                    f"Conversation {conversation_id} not found",
                    details={"conversation_id": conversation_id},
                )
            conversation = Conversation.from_dict(record.value)
            conversation.append(new_message)
            return [self._conversation_record(conversation)], []

        self.table.update(conversation_key(conversation_id), plan)
        return new_message

    def get_messages(self, conversation_id: str, options: OptionsInput = None) -> List[Message]:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(
                f"Conversation {conversation_id} not found",
                details={"conversation_id": conversation_id},
            )
        return QueryOptions.coerce(options).filter_messages(conversation.messages)

    def delete_conversation(self, conversation_id: str) -> bool:
        deleted = self.table.delete(conversation_key(conversation_id))
        if deleted:
            self._logger.debug(f"Deleted conversation {conversation_id}")
        return deleted

    def list_conversations(self, limit: Optional[int] = None, page_size: Optional[int] = None) -> List[Conversation]:
        """Paginated scan of conversation blobs. No ordering guarantee."""
        return [
            Conversation.from_dict(record.value)
            for record in self._scan(CONVERSATION_PREFIX, limit, page_size)
        ]

    # ===== Items =====

    def _item_records(self, item: Item) -> List[TableRecord]:
        records = [TableRecord(
            key=item_key(item.key),
            kind="item",
            value=item.to_dict(),
            ttl=item.ttl,
            created_at=item.created_at.isoformat(),
            updated_at=item.updated_at.isoformat(),
        )]
        for tag in item.tags:
            records.append(TableRecord(key=tag_key(tag, item.key), kind="tag", value=item.key, ttl=item.ttl))
        return records

    @staticmethod
    def _item_deletes(item: Item) -> List[str]:
        return [item_key(item.key)] + [tag_key(tag, item.key) for tag in item.tags]

    def store_item(
        self,
        key: str,
        value: Any,
        tags: Optional[Iterable[str]] = None,
        ttl: Optional[int] = None,
    ) -> Item:
        """
        Write the item blob and its tag pointers in one transaction.

        Pointers for tags the item no longer carries are removed.
        """
        validate_key(key)
        tag_list = normalize_tags(tags)
        stored: List[Item] = []

        def plan(record: Optional[TableRecord]) -> Tuple[List[TableRecord], List[str]]:
            now = utc_now()
            existing = Item.from_dict(record.value) if record else None
            item = Item(
                key=key,
                value=value,
                tags=tag_list,
                ttl=ttl,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            stale = [tag_key(t, key) for t in (existing.tags if existing else []) if t not in tag_list]
            stored.append(item)
            return self._item_records(item), stale

        self.table.update(item_key(key), plan)
        self._logger.debug(f"Stored item {key} (tags={tag_list})")
        return stored[0]

    def _purge_if_expired(self, key: str) -> Optional[Item]:
        """
        Delete an item and its pointers if it is still expired when re-read
        inside the transaction. Returns the live item when a newer write
        has replaced it, else None.
        """
        live: List[Item] = []

        def plan(record: Optional[TableRecord]) -> Tuple[List[TableRecord], List[str]]:
            if record is None:
                return [], []
            item = Item.from_dict(record.value)
            if not item.is_expired():
                live.append(item)
                return [], []
            return [], self._item_deletes(item)

        self.table.update(item_key(key), plan)
        if live:
            return live[0]
        self._logger.debug(f"Purged expired item {key}")
        return None

    def get_item(self, key: str) -> Optional[Item]:
        record = self.table.get(item_key(key))
        if record is None:
            return None
        item = Item.from_dict(record.value)
        if item.is_expired():
            return self._purge_if_expired(key)
        return item

    def search_by_tags(self, tags: Iterable[str], options: OptionsInput = None) -> List[Item]:
        """
        Candidates come from the first tag's pointers; each is fetched and
        kept only if it still carries every tag and has not expired.
        """
        wanted = normalize_tags(tags)
        if not wanted:
            return []
        query = QueryOptions.coerce(options)

        results: List[Item] = []
        seen = set()
        now = now_seconds()
        for pointer in self.table.query_prefix(tag_prefix(wanted[0])):
            key = pointer.value
            if not isinstance(key, str) or key in seen:
                continue
            seen.add(key)

            record = self.table.get(item_key(key))
            if record is None:
                self._logger.debug(f"Stale tag pointer {pointer.key}")
                continue
            item = Item.from_dict(record.value)
            if item.is_expired(now):
                item = self._purge_if_expired(key)
                if item is None:
                    continue
            if item.has_tags(wanted):
                results.append(item)

        return query.limit_items(results)

    def delete_item(self, key: str) -> bool:
        """Remove the item blob and its tag pointers."""
        found: List[bool] = []

        def plan(record: Optional[TableRecord]) -> Tuple[List[TableRecord], List[str]]:
            if record is None:
                return [], []
            found.append(True)
            return [], self._item_deletes(Item.from_dict(record.value))

        self.table.update(item_key(key), plan)
        return bool(found)

    def list_items(self, limit: Optional[int] = None, page_size: Optional[int] = None) -> List[Item]:
        """Paginated scan of live items. No ordering guarantee."""
        now = now_seconds()
        items = []
        for record in self._scan(ITEM_PREFIX, None, page_size):
            item = Item.from_dict(record.value)
            if item.is_expired(now):
                continue
            items.append(item)
            if limit and len(items) >= limit:
                break
        return items

    def _scan(self, prefix: str, limit: Optional[int], page_size: Optional[int]) -> Iterable[TableRecord]:
        """Yield records page by page until limit or the last page."""
        size = page_size or self.page_size
        count = 0
        last_key: Optional[str] = None
        while True:
            page = self.table.scan(prefix, limit=size, start_after=last_key)
            for record in page.records:
                yield record
                count += 1
                if limit and count >= limit:
                    return
            if page.last_key is None:
                return
            last_key = page.last_key

    # ===== Introspection =====

    def stats(self) -> Dict[str, Any]:
        return {
            "conversations": self.table.count(CONVERSATION_PREFIX),
            "items": self.table.count(ITEM_PREFIX),
            "tag_pointers": self.table.count(TAG_PREFIX),
            "table": self.table.table_name,
            "circuit": self.table.breaker.state.name,
        }
