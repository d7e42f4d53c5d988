"""
Access Audit Trail
------------------
HMAC-chained record of every access decision made by the secure store.

Trust Boundary:
- Tamper-evident, NOT tamper-proof
- In-process only; the trail lives as long as the store
- Assumes the HMAC key is protected at the process boundary

Design:
- Append-only (no update, no delete); only the newest max_entries are kept
- Dropped entries leave their last hash behind as the chain anchor
- HMAC chain for ordering integrity
- Canonical JSON serialization for determinism
"""

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple
import hashlib
import hmac
import json
import logging
import os
import threading

from infra.logging import get_op_id


@dataclass(frozen=True)
class AuditEntry:
    """
    A single access decision.

    prev_hash links to the previous entry, entry_hash is the HMAC over
    this entry plus prev_hash.
    """
    seq: int
    timestamp: datetime
    operation: str
    resource: Optional[str]
    allowed: bool
    actor: str
    role: Optional[str] = None
    reason: str = ""
    op_id: Optional[str] = None
    prev_hash: str = ""
    entry_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation,
            "resource": self.resource,
            "allowed": self.allowed,
            "actor": self.actor,
            "role": self.role,
            "reason": self.reason,
            "op_id": self.op_id,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }


@dataclass
class VerifyResult:
    """Result of chain verification."""
    valid: bool
    entries_checked: int
    broken_at: Optional[int] = None  # seq where the chain broke
    error: Optional[str] = None


DEFAULT_MAX_ENTRIES = 10_000


class AccessAuditLog:
    """
    In-memory audit trail with HMAC chain verification.

    Thread-safe: appends are serialized so prev_hash is always the
    hash of the entry before. Once max_entries is reached the oldest
    entry is dropped and its hash becomes the anchor the retained
    chain is verified from.
    """

    GENESIS_HASH = "0" * 64

    def __init__(self, key: Optional[bytes] = None, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        # A random key still detects tampering within this process
        self._key = key or os.urandom(32)
        self.max_entries = max_entries
        self._entries: Deque[AuditEntry] = deque(maxlen=max_entries)
        self._anchor = self.GENESIS_HASH
        self._seq = 0
        self._lock = threading.Lock()
        self._logger = logging.getLogger("agentmem.security.audit")

    def _canonical_payload(self, entry: AuditEntry, prev_hash: str) -> bytes:
        payload = entry.to_dict()
        payload.pop("entry_hash")
        payload["prev_hash"] = prev_hash
        return json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')

    def _compute_hash(self, entry: AuditEntry, prev_hash: str) -> str:
        return hmac.new(self._key, self._canonical_payload(entry, prev_hash), hashlib.sha256).hexdigest()

    def record(
        self,
        operation: str,
        resource: Optional[str],
        allowed: bool,
        actor: str = "anonymous",
        role: Optional[str] = None,
        reason: str = "",
    ) -> str:
        """Append an access decision. Returns the entry hash."""
        with self._lock:
            prev_hash = self._entries[-1].entry_hash if self._entries else self._anchor
            self._seq += 1
            entry = AuditEntry(
                seq=self._seq,
                timestamp=datetime.now(timezone.utc),
                operation=operation,
                resource=resource,
                allowed=allowed,
                actor=actor,
                role=role,
                reason=reason,
                op_id=get_op_id(),
                prev_hash=prev_hash,
            )
            entry = replace(entry, entry_hash=self._compute_hash(entry, prev_hash))
            if len(self._entries) == self.max_entries:
                self._anchor = self._entries[0].entry_hash
            self._entries.append(entry)

        self._logger.debug(
            f"Audit: {operation} | {actor} | {'allow' if allowed else 'deny'} | {resource or '-'}"
        )
        return entry.entry_hash

    def _snapshot(self) -> Tuple[str, List[AuditEntry]]:
        with self._lock:
            return self._anchor, list(self._entries)

    def entries(self, operation: Optional[str] = None) -> List[AuditEntry]:
        """Snapshot of the retained trail, optionally filtered by operation."""
        _, entries = self._snapshot()
        if operation is not None:
            entries = [e for e in entries if e.operation == operation]
        return entries

    def verify_chain(
        self,
        entries: Optional[List[AuditEntry]] = None,
        anchor: Optional[str] = None,
    ) -> VerifyResult:
        """
        Verify HMAC chain integrity from the anchor hash.

        The live trail is checked from its own anchor (the genesis hash
        until entries are dropped). Pass `entries` to verify an exported
        copy; its anchor defaults to the genesis hash.
        """
        if entries is None:
            live_anchor, entries = self._snapshot()
            anchor = anchor or live_anchor

        expected_prev = anchor or self.GENESIS_HASH
        for index, entry in enumerate(entries):
            if entry.prev_hash != expected_prev:
                return VerifyResult(
                    valid=False,
                    entries_checked=index,
                    broken_at=entry.seq,
                    error=f"prev_hash mismatch at entry {entry.seq}",
                )
            if not hmac.compare_digest(entry.entry_hash, self._compute_hash(entry, entry.prev_hash)):
                return VerifyResult(
                    valid=False,
                    entries_checked=index,
                    broken_at=entry.seq,
                    error=f"entry_hash mismatch at entry {entry.seq}",
                )
            expected_prev = entry.entry_hash

        return VerifyResult(valid=True, entries_checked=len(entries))

    def get_stats(self) -> Dict[str, Any]:
        """Get audit trail statistics."""
        with self._lock:
            anchor, entries, recorded = self._anchor, list(self._entries), self._seq
        denied = sum(1 for e in entries if not e.allowed)
        return {
            "total_entries": len(entries),
            "total_recorded": recorded,
            "dropped": recorded - len(entries),
            "denied": denied,
            "allowed": len(entries) - denied,
            "anchor": anchor,
            "last_hash": entries[-1].entry_hash if entries else anchor,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
