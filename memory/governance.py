"""
Memory Governance
-----------------
Sensitive-content detection and redaction for the secure store.

Rules:
- Sensitive patterns are static regex only (no heuristics)
- Detection decides whether a message is encrypted at rest
- Redaction applies to what callers read, never to what is stored
- Redaction is deterministic: same input, same output
"""

from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Tuple
import logging
import re

from core.errors import ConfigurationError


REDACTION_PLACEHOLDER = "[REDACTED]"

# Order matters: longer numeric shapes first so a card number is not
# partially consumed by the phone or SSN pattern.
DEFAULT_SENSITIVE_PATTERNS: List[str] = [
    r'\b(?:\d{4}[-\s]?){3}\d{4}\b',                          # Card-number-like
    r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b',   # Email
    r'\b\d{3}[-.]?\d{3}[-.]?\d{4}\b',                        # Phone
    r'\b\d{3}-?\d{2}-?\d{4}\b',                              # SSN-like
]


@dataclass
class RedactionPolicy:
    """Which patterns count as sensitive and whether reads are redacted."""
    sensitive_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_SENSITIVE_PATTERNS))
    redaction_enabled: bool = True
    redaction_placeholder: str = REDACTION_PLACEHOLDER

    def __post_init__(self):
        """Compile regex patterns. A bad pattern is a configuration error."""
        self._compiled_patterns: List[Pattern] = []
        for pattern in self.sensitive_patterns:
            try:
                self._compiled_patterns.append(re.compile(pattern))
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid sensitive pattern {pattern!r}: {e}",
                    details={"pattern": pattern},
                ) from e

    @classmethod
    def from_patterns(cls, patterns: Optional[List[str]], redaction_enabled: bool = True) -> "RedactionPolicy":
        """None keeps the default patterns."""
        if patterns is None:
            return cls(redaction_enabled=redaction_enabled)
        return cls(sensitive_patterns=list(patterns), redaction_enabled=redaction_enabled)

    def get_compiled_patterns(self) -> List[Pattern]:
        return self._compiled_patterns


@dataclass
class RedactionResult:
    """Result of a redaction operation."""
    original_length: int
    redacted_length: int
    redaction_count: int
    patterns_matched: List[str]

    @property
    def was_redacted(self) -> bool:
        return self.redaction_count > 0


class Redactor:
    """Applies a RedactionPolicy to message content."""

    def __init__(self, policy: Optional[RedactionPolicy] = None):
        self.policy = policy or RedactionPolicy()
        self._logger = logging.getLogger("agentmem.memory.governance")

    def contains_sensitive(self, content: str) -> bool:
        """True if any sensitive pattern matches."""
        return any(p.search(content) for p in self.policy.get_compiled_patterns())

    def redact(self, content: str, force: bool = False) -> Tuple[str, RedactionResult]:
        """
        Replace every pattern match with the placeholder.

        Returns (redacted_content, result). A disabled policy returns the
        content unchanged unless `force` is set.
        """
        if not self.policy.redaction_enabled and not force:
            return content, RedactionResult(
                original_length=len(content),
                redacted_length=len(content),
                redaction_count=0,
                patterns_matched=[],
            )

        redacted = content
        patterns_matched = []
        count = 0

        for pattern in self.policy.get_compiled_patterns():
            redacted, n = pattern.subn(self.policy.redaction_placeholder, redacted)
            if n:
                count += n
                patterns_matched.append(pattern.pattern)

        result = RedactionResult(
            original_length=len(content),
            redacted_length=len(redacted),
            redaction_count=count,
            patterns_matched=patterns_matched,
        )

        if result.was_redacted:
            self._logger.debug(f"Redacted {count} sensitive spans")

        return redacted, result

    def redact_text(self, content: str) -> str:
        return self.redact(content)[0]
