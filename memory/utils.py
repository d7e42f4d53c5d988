"""
Memory Utilities
----------------
Helpers for trimming and inspecting message lists before they are sent
to a model.
"""

from collections import Counter
from typing import Dict, Iterable, List, Union
import math
import re

from .models import Message, MessageRole

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "is", "are", "was", "were",
    "in", "on", "at", "to", "for", "with", "by", "about", "of", "from",
})

_WORD_SPLIT = re.compile(r"\W+")


def extract_recent_messages(
    messages: List[Message],
    max_tokens: int = 2000,
    tokens_per_message: int = 100,
) -> List[Message]:
    """
    System messages always, then as many of the most recent other
    messages as the remaining budget allows.
    """
    if not messages:
        return []

    system = [m for m in messages if m.role == MessageRole.SYSTEM]
    others = [m for m in messages if m.role != MessageRole.SYSTEM]

    remaining = max_tokens - len(system) * tokens_per_message
    budget = max(0, remaining // tokens_per_message) if tokens_per_message > 0 else len(others)

    recent = others[-budget:] if budget else []
    return system + recent


def estimate_tokens(message: Union[Message, str]) -> int:
    """Rough estimate: 4 characters per token."""
    content = message if isinstance(message, str) else message.content
    return math.ceil(len(content) / 4)


def filter_by_role(messages: Iterable[Message], roles: Iterable[Union[MessageRole, str]]) -> List[Message]:
    wanted = {MessageRole.parse(r) for r in roles}
    return [m for m in messages if m.role in wanted]


def group_by_role(messages: Iterable[Message]) -> Dict[str, List[Message]]:
    """Messages grouped by role value, roles in first-seen order."""
    groups: Dict[str, List[Message]] = {}
    for message in messages:
        groups.setdefault(message.role.value, []).append(message)
    return groups


def extract_keywords(messages: Iterable[Message], max_keywords: int = 10) -> List[str]:
    """Most frequent words longer than two characters, stop words excluded."""
    text = " ".join(m.content for m in messages).lower()
    words = [
        w for w in _WORD_SPLIT.split(text)
        if len(w) > 2 and w not in STOP_WORDS
    ]
    # most_common keeps first-seen order among equal counts
    return [word for word, _ in Counter(words).most_common(max_keywords)]
