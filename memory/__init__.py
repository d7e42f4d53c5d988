# Memory module - Conversation and item storage
# Volatile in front, durable behind, secure decorator on top
# utils: message-list helpers (recent window, token estimate, roles, keywords)

from .models import (
    Conversation, Message, MessageDraft, MessageRole, Item, QueryOptions,
)
from .base import MemoryManager
from .volatile import VolatileMemoryStore
from .durable import DurableMemoryStore
from .hybrid import HybridMemoryStore, DirtySet, SyncResult
from .secure import SecureMemoryStore, FieldCipher
from .governance import Redactor, RedactionPolicy, DEFAULT_SENSITIVE_PATTERNS
from .conversation import ConversationManager
from .factory import MemoryType, create_memory_manager, create_from_yaml
from .utils import (
    extract_recent_messages, estimate_tokens, filter_by_role, group_by_role, extract_keywords,
)

__all__ = [
    "Conversation",
    "Message",
    "MessageDraft",
    "MessageRole",
    "Item",
    "QueryOptions",
    "MemoryManager",
    "VolatileMemoryStore",
    "DurableMemoryStore",
    "HybridMemoryStore",
    "DirtySet",
    "SyncResult",
    "SecureMemoryStore",
    "FieldCipher",
    "Redactor",
    "RedactionPolicy",
    "DEFAULT_SENSITIVE_PATTERNS",
    "ConversationManager",
    "MemoryType",
    "create_memory_manager",
    "create_from_yaml",
    "extract_recent_messages",
    "estimate_tokens",
    "filter_by_role",
    "group_by_role",
    "extract_keywords",
]
