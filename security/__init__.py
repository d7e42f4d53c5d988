# Security module - Access control and audit trail for the secure store
# Identity from scope, decisions logged, every decision chained

from .access import (
    AccessPolicy, AccessControlPolicy, AccessContext, AccessDecision,
    AccessScope, current_access_context, OPERATIONS,
)
from .audit import AccessAuditLog, AuditEntry, VerifyResult

__all__ = [
    "AccessPolicy",
    "AccessControlPolicy",
    "AccessContext",
    "AccessDecision",
    "AccessScope",
    "current_access_context",
    "OPERATIONS",
    "AccessAuditLog",
    "AuditEntry",
    "VerifyResult",
]
