"""
Memory Models
-------------
Conversation, message and item records shared by every store.

Rules:
- Messages are immutable once appended; ordering is append order
- A conversation only grows until it is deleted
- Items are unique per key; re-storing overwrites
- Everything serializes to JSON-safe dicts (the durable blob format)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import time
import uuid

from core.errors import ValidationError


class MessageRole(str, Enum):
    """Role of a message in a conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    @classmethod
    def parse(cls, value: Union[str, "MessageRole"]) -> "MessageRole":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Unknown message role: {value!r}",
                details={"allowed": [r.value for r in cls]},
            ) from None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_millis() -> int:
    return int(time.time() * 1000)


def now_seconds() -> int:
    return int(time.time())


def new_id() -> str:
    return str(uuid.uuid4())


def _parse_datetime(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Message:
    """A single message in a conversation."""
    role: MessageRole
    content: str
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_millis)  # Epoch millis
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            role=MessageRole.parse(data["role"]),
            content=data["content"],
            timestamp=int(data["timestamp"]),
            metadata=dict(data["metadata"]) if data.get("metadata") is not None else None,
        )

    def __repr__(self) -> str:
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"Message({self.role.value}: {preview})"


@dataclass
class MessageDraft:
    """What a caller supplies to add_message; id and timestamp are assigned by the store."""
    role: MessageRole
    content: str
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def coerce(cls, message: Union["MessageDraft", Mapping[str, Any]]) -> "MessageDraft":
        """Accept a draft or a {role, content, metadata?} mapping."""
        if isinstance(message, cls):
            return message
        if not isinstance(message, Mapping):
            raise ValidationError(f"Message must be a mapping, got {type(message).__name__}")
        if "role" not in message or "content" not in message:
            raise ValidationError("Message requires 'role' and 'content'")
        content = message["content"]
        if not isinstance(content, str):
            raise ValidationError("Message content must be a string")
        metadata = message.get("metadata")
        return cls(
            role=MessageRole.parse(message["role"]),
            content=content,
            metadata=dict(metadata) if metadata is not None else None,
        )

    def to_message(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            metadata=dict(self.metadata) if self.metadata is not None else None,
        )


@dataclass
class Conversation:
    """An ordered, append-only sequence of messages plus metadata."""
    id: str = field(default_factory=new_id)
    messages: List[Message] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def append(self, message: Message) -> None:
        """Append a message and advance updated_at (never backwards)."""
        self.messages.append(message)
        stamped = datetime.fromtimestamp(message.timestamp / 1000, tz=timezone.utc)
        self.updated_at = max(self.updated_at, stamped, utc_now())

    def message_ids(self) -> set:
        return {m.id for m in self.messages}

    def copy(self) -> "Conversation":
        """Snapshot: new message list and metadata dict; messages themselves are immutable."""
        return Conversation(
            id=self.id,
            messages=list(self.messages),
            metadata=dict(self.metadata),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
        )

    def __len__(self) -> int:
        return len(self.messages)


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Tags have set semantics: drop duplicates, keep first-seen order."""
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValidationError("Tags must be an iterable of strings, not a string")
    seen: Dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str) or not tag:
            raise ValidationError(f"Invalid tag: {tag!r}")
        seen.setdefault(tag, None)
    return list(seen)


@dataclass
class Item:
    """A tagged, optionally expiring key/value record."""
    key: str
    value: Any
    tags: List[str] = field(default_factory=list)
    ttl: Optional[int] = None  # Absolute expiry, epoch seconds
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.ttl is None:
            return False
        return (now if now is not None else now_seconds()) > self.ttl

    def copy(self) -> "Item":
        return replace(self, tags=list(self.tags))

    def has_tags(self, tags: Iterable[str]) -> bool:
        """AND semantics: every requested tag must be present."""
        own = set(self.tags)
        return all(tag in own for tag in tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "tags": list(self.tags),
            "ttl": self.ttl,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Item":
        return cls(
            key=data["key"],
            value=data.get("value"),
            tags=list(data.get("tags") or []),
            ttl=data.get("ttl"),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
        )


@dataclass
class QueryOptions:
    """Filters for get_messages / search_by_tags."""
    start_time: Optional[int] = None  # Epoch millis, inclusive
    end_time: Optional[int] = None    # Epoch millis, inclusive
    limit: Optional[int] = None

    @classmethod
    def coerce(cls, options: Union["QueryOptions", Mapping[str, Any], None]) -> "QueryOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(
            start_time=options.get("start_time"),
            end_time=options.get("end_time"),
            limit=options.get("limit"),
        )

    @property
    def has_limit(self) -> bool:
        return self.limit is not None and self.limit > 0

    def filter_messages(self, messages: List[Message]) -> List[Message]:
        """Time window first, then keep the most recent `limit`."""
        result = messages
        if self.start_time is not None:
            result = [m for m in result if m.timestamp >= self.start_time]
        if self.end_time is not None:
            result = [m for m in result if m.timestamp <= self.end_time]
        if self.has_limit:
            result = result[-self.limit:]
        return list(result)

    def limit_items(self, items: List[Item]) -> List[Item]:
        return items[:self.limit] if self.has_limit else items
