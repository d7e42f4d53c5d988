"""
Conversation Manager
--------------------
Thin convenience layer over any memory store.

Rules:
- Role-tagged helpers are plain add_message calls
- Formatting maps the canonical roles onto a provider's vocabulary
- Summaries are a fixed transcript excerpt, never a model call
"""

from typing import Any, Dict, List, Optional
import logging

from .base import MemoryManager, OptionsInput
from .models import Message, MessageRole
from .volatile import VolatileMemoryStore

SUMMARY_MESSAGE_COUNT = 5


class ConversationManager:
    """
    Conversation history management.

    Defaults to a fresh volatile store when no store is given.
    """

    def __init__(
        self,
        memory: Optional[MemoryManager] = None,
        max_messages: int = 100,
        max_conversations: int = 10,
    ):
        self.memory = memory if memory is not None else VolatileMemoryStore(
            max_messages=max_messages,
            max_conversations=max_conversations,
        )
        self._logger = logging.getLogger("agentmem.memory.conversation")
        self._logger.debug(f"Conversation manager over {type(self.memory).__name__}")

    def start_conversation(self, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create a conversation and return its id."""
        return self.memory.create_conversation(metadata or {}).id

    def _add(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]],
    ) -> Message:
        return self.memory.add_message(
            conversation_id,
            {"role": role, "content": content, "metadata": metadata},
        )

    def add_system_message(self, conversation_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        return self._add(conversation_id, MessageRole.SYSTEM, content, metadata)

    def add_user_message(self, conversation_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        return self._add(conversation_id, MessageRole.USER, content, metadata)

    def add_assistant_message(self, conversation_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        return self._add(conversation_id, MessageRole.ASSISTANT, content, metadata)

    def add_tool_message(self, conversation_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        return self._add(conversation_id, MessageRole.TOOL, content, metadata)

    def get_conversation_history(self, conversation_id: str, options: OptionsInput = None) -> List[Message]:
        return self.memory.get_messages(conversation_id, options)

    def get_formatted_history(
        self,
        conversation_id: str,
        provider: str = "openai",
        options: OptionsInput = None,
    ) -> List[Dict[str, Any]]:
        """
        History as provider message dicts.

        openai: roles kept, metadata included when present.
        anthropic: tool becomes assistant, anything not system/assistant becomes user.
        anything else: bare {role, content}.
        """
        messages = self.get_conversation_history(conversation_id, options)
        provider = (provider or "").lower()

        if provider == "openai":
            formatted = []
            for message in messages:
                entry: Dict[str, Any] = {"role": message.role.value, "content": message.content}
                if message.metadata:
                    entry["metadata"] = dict(message.metadata)
                formatted.append(entry)
            return formatted

        if provider == "anthropic":
            role_map = {
                MessageRole.SYSTEM: "system",
                MessageRole.ASSISTANT: "assistant",
                MessageRole.TOOL: "assistant",  # No tool role
            }
            return [
                {"role": role_map.get(m.role, "user"), "content": m.content}
                for m in messages
            ]

        return [{"role": m.role.value, "content": m.content} for m in messages]

    def summarize_conversation(self, conversation_id: str, max_length: int = 500) -> str:
        """Last few messages as `role: content` lines, truncated with '...'."""
        messages = self.get_conversation_history(conversation_id)
        if not messages:
            return ""

        summary = "\n".join(
            f"{m.role.value}: {m.content}" for m in messages[-SUMMARY_MESSAGE_COUNT:]
        )
        if len(summary) > max_length:
            return summary[:max_length] + "..."
        return summary

    def delete_conversation(self, conversation_id: str) -> bool:
        return self.memory.delete_conversation(conversation_id)
