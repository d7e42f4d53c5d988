"""
Memory Manager Contract
-----------------------
The capability set every store exposes: volatile, durable, hybrid and
the secure decorator are interchangeable behind it.

Rules:
- get_conversation / get_item never raise for a missing id; they return None
- add_message / get_messages raise NotFoundError for an unknown conversation
- store_item on an existing key overwrites, never duplicates
- delete_* return True only if something was removed
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union, runtime_checkable

from core.errors import ValidationError

from .models import Conversation, Item, Message, MessageDraft, QueryOptions

MessageInput = Union[MessageDraft, Mapping[str, Any]]
OptionsInput = Union[QueryOptions, Mapping[str, Any], None]


@runtime_checkable
class MemoryManager(Protocol):
    """Conversation and item storage."""

    def create_conversation(self, metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def add_message(self, conversation_id: str, message: MessageInput) -> Message:
        ...

    def get_messages(self, conversation_id: str, options: OptionsInput = None) -> List[Message]:
        ...

    def store_item(
        self,
        key: str,
        value: Any,
        tags: Optional[Iterable[str]] = None,
        ttl: Optional[int] = None,
    ) -> Item:
        ...

    def get_item(self, key: str) -> Optional[Item]:
        ...

    def search_by_tags(self, tags: Iterable[str], options: OptionsInput = None) -> List[Item]:
        ...

    def delete_item(self, key: str) -> bool:
        ...

    def delete_conversation(self, conversation_id: str) -> bool:
        ...


@runtime_checkable
class ConversationSink(Protocol):
    """Stores that accept whole conversations with their ids intact (sync targets)."""

    def put_conversation(self, conversation: Conversation) -> Conversation:
        ...

    def merge_conversation(self, conversation: Conversation) -> int:
        ...


def validate_key(key: str, what: str = "key") -> str:
    """Reject empty or non-string ids/keys."""
    if not isinstance(key, str) or not key:
        raise ValidationError(f"Invalid {what}: {key!r}")
    return key
