"""
Secure Memory Store
-------------------
Decorator adding encryption, redaction and access control to any store.

Rules:
- Every operation is access-checked before the wrapped store is touched
- Items are always encrypted at rest; messages only when they contain
  sensitive content
- Callers never see ciphertext: reads decrypt, then redact message content
- A record that fails to decrypt is returned as stored, never raised
- The key is fixed at construction; no rotation, no global state

Token format:
    base64( nonce[12] || ciphertext || tag[16] ), plaintext is JSON
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union
import base64
import binascii
import hashlib
import json
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import SecretStr

from core.errors import AccessDeniedError, ConfigurationError, DecryptionFailedError
from infra.config import MIN_ENCRYPTION_KEY_LENGTH
from security.access import (
    AccessControlPolicy, AccessDecision, AccessPolicy, current_access_context,
)
from security.audit import AccessAuditLog

from .base import MemoryManager, MessageInput, OptionsInput
from .governance import RedactionPolicy, Redactor
from .models import Conversation, Item, Message, MessageDraft, normalize_tags

ENCRYPTED_TAG = "encrypted"

NONCE_SIZE = 12
TAG_SIZE = 16
KDF_ITERATIONS = 100_000
KDF_SALT = b"agentmem.field-cipher.v1"


class FieldCipher:
    """AES-256-GCM over JSON payloads, key derived with PBKDF2-HMAC-SHA256."""

    def __init__(self, secret: str, salt: bytes = KDF_SALT, iterations: int = KDF_ITERATIONS):
        if not isinstance(secret, str) or len(secret) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(
                f"Encryption key must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        self._aead = AESGCM(kdf.derive(secret.encode("utf-8")))

    def encrypt(self, value: Any) -> str:
        """Encrypt any JSON-serializable value into a token."""
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(value).encode("utf-8")
        sealed = self._aead.encrypt(nonce, plaintext, None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: Any) -> Any:
        """Decrypt a token. Any malformed or unauthenticated input raises DecryptionFailedError."""
        if not isinstance(token, str):
            raise DecryptionFailedError(f"Expected a token string, got {type(token).__name__}")
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise DecryptionFailedError(f"Token is not valid base64: {e}") from e
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailedError("Token is too short")

        try:
            plaintext = self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise DecryptionFailedError("Token failed authentication (corrupt or wrong key)") from e

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionFailedError(f"Decrypted payload is not JSON: {e}") from e


def _secret_value(key: Union[str, SecretStr, None]) -> str:
    if isinstance(key, SecretStr):
        return key.get_secret_value()
    return key or ""


class SecureMemoryStore:
    """
    Secure decorator over any MemoryManager.

    The wrapped store is available as `base` for topology-specific calls
    (e.g. `store.base.force_sync_all()`); those calls bypass this layer.
    """

    def __init__(
        self,
        base: MemoryManager,
        encryption_key: Union[str, SecretStr],
        policy: Optional[AccessControlPolicy] = None,
        sensitive_patterns: Optional[List[str]] = None,
        redaction_enabled: bool = True,
        audit_logging: bool = True,
        audit_log: Optional[AccessAuditLog] = None,
    ):
        secret = _secret_value(encryption_key)
        self.base = base
        self.cipher = FieldCipher(secret)
        self.policy = policy or AccessPolicy()
        self.redactor = Redactor(RedactionPolicy.from_patterns(sensitive_patterns, redaction_enabled))
        self.audit_logging = audit_logging
        self.audit_log = audit_log if audit_log is not None else AccessAuditLog(
            key=hashlib.sha256(b"agentmem.audit:" + secret.encode("utf-8")).digest()
        )
        self._logger = logging.getLogger("agentmem.memory.secure")

        self._logger.info(
            f"Secure store initialized (access control "
            f"{'on' if self.access_control_enabled else 'off'}, redaction "
            f"{'on' if redaction_enabled else 'off'}, audit {'on' if audit_logging else 'off'})"
        )

    @classmethod
    def from_config(cls, base: MemoryManager, config: Any, policy: Optional[AccessControlPolicy] = None) -> "SecureMemoryStore":
        """Build from a SecureConfig."""
        return cls(
            base,
            encryption_key=config.encryption_key,
            policy=policy or AccessPolicy.from_config(config.access_control),
            sensitive_patterns=config.sensitive_patterns,
            redaction_enabled=config.redaction_enabled,
            audit_logging=config.audit_logging,
        )

    @property
    def access_control_enabled(self) -> bool:
        return getattr(self.policy, "enabled", True)

    # ===== Access control =====

    def _check(self, operation: str, resource_id: Optional[str]) -> None:
        """Raise AccessDeniedError unless the policy allows the operation."""
        context = current_access_context()
        decision = AccessDecision.coerce(self.policy.check(operation, resource_id, context))

        if self.audit_logging:
            self.audit_log.record(
                operation,
                resource_id,
                decision.allowed,
                actor=context.actor,
                role=context.role,
                reason=decision.reason,
            )

        if not decision.allowed:
            raise AccessDeniedError(operation, resource_id or "-", decision.reason)

    # ===== Reveal (decrypt + redact) =====

    def _reveal_message(self, message: Message) -> Message:
        metadata = message.metadata or {}
        if metadata.get(ENCRYPTED_TAG):
            try:
                plaintext = self.cipher.decrypt(message.content)
            except DecryptionFailedError as e:
                self._logger.warning(f"Could not decrypt message {message.id}: {e}")
                return message
            revealed_metadata = {k: v for k, v in metadata.items() if k != ENCRYPTED_TAG}
            revealed_metadata["was_encrypted"] = True
            return replace(
                message,
                content=self.redactor.redact_text(str(plaintext)),
                metadata=revealed_metadata,
            )
        return replace(message, content=self.redactor.redact_text(message.content))

    def _reveal_conversation(self, conversation: Conversation) -> Conversation:
        revealed = conversation.copy()
        revealed.messages = [self._reveal_message(m) for m in conversation.messages]
        return revealed

    def _reveal_item(self, item: Item) -> Item:
        if ENCRYPTED_TAG not in item.tags:
            return item
        try:
            value = self.cipher.decrypt(item.value)
        except DecryptionFailedError as e:
            self._logger.warning(f"Could not decrypt item {item.key}: {e}")
            return item
        return replace(item, value=value, tags=[t for t in item.tags if t != ENCRYPTED_TAG])

    # ===== Conversations =====

    def create_conversation(self, metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        self._check("create_conversation", None)
        secure_metadata = dict(metadata or {})
        secure_metadata["security"] = {
            "encrypted": True,
            "access_control": self.access_control_enabled,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        return self.base.create_conversation(secure_metadata)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        self._check("get_conversation", conversation_id)
        conversation = self.base.get_conversation(conversation_id)
        return self._reveal_conversation(conversation) if conversation else None

    def add_message(self, conversation_id: str, message: MessageInput) -> Message:
        """Encrypt sensitive content before it reaches the wrapped store."""
        self._check("add_message", conversation_id)
        draft = MessageDraft.coerce(message)

        if self.redactor.contains_sensitive(draft.content):
            metadata = dict(draft.metadata or {})
            metadata[ENCRYPTED_TAG] = True
            metadata["contains_sensitive_info"] = True
            draft = MessageDraft(
                role=draft.role,
                content=self.cipher.encrypt(draft.content),
                metadata=metadata,
            )

        return self._reveal_message(self.base.add_message(conversation_id, draft))

    def get_messages(self, conversation_id: str, options: OptionsInput = None) -> List[Message]:
        self._check("get_messages", conversation_id)
        return [self._reveal_message(m) for m in self.base.get_messages(conversation_id, options)]

    def delete_conversation(self, conversation_id: str) -> bool:
        self._check("delete_conversation", conversation_id)
        return self.base.delete_conversation(conversation_id)

    # ===== Items =====

    def store_item(
        self,
        key: str,
        value: Any,
        tags: Optional[Iterable[str]] = None,
        ttl: Optional[int] = None,
    ) -> Item:
        """Store the value as ciphertext, marked with the `encrypted` tag."""
        self._check("store_item", key)
        tag_list = normalize_tags(tags)
        stored = self.base.store_item(
            key,
            self.cipher.encrypt(value),
            tag_list + ([] if ENCRYPTED_TAG in tag_list else [ENCRYPTED_TAG]),
            ttl,
        )
        return replace(stored, value=value, tags=[t for t in stored.tags if t != ENCRYPTED_TAG])

    def get_item(self, key: str) -> Optional[Item]:
        self._check("get_item", key)
        item = self.base.get_item(key)
        return self._reveal_item(item) if item else None

    def search_by_tags(self, tags: Iterable[str], options: OptionsInput = None) -> List[Item]:
        self._check("search_by_tags", None)
        return [self._reveal_item(item) for item in self.base.search_by_tags(tags, options)]

    def delete_item(self, key: str) -> bool:
        self._check("delete_item", key)
        return self.base.delete_item(key)
