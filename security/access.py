"""
Access Control
--------------
Per-operation access checks for the secure memory store.

Rules:
- Every store operation is checked before the wrapped store is touched
- Disabled policy allows everything
- Enabled policy allows and logs, unless the caller's scope names a
  user or role outside the configured allowlists
- Explicitly blocked operations are always denied
- Identity comes from the current AccessScope, never from arguments

Usage:
    from security.access import AccessPolicy, AccessScope

    policy = AccessPolicy(enabled=True, roles=["admin"])

    with AccessScope(user="alice", role="admin"):
        store.get_item("profile")
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol, Set, Union, runtime_checkable
import contextvars
import logging


# Operations a store exposes; used for validation of blocks/grants
OPERATIONS: Set[str] = {
    "create_conversation",
    "get_conversation",
    "add_message",
    "get_messages",
    "store_item",
    "get_item",
    "search_by_tags",
    "delete_item",
    "delete_conversation",
}


@dataclass(frozen=True)
class AccessContext:
    """Who is calling. Empty context = anonymous."""
    user: Optional[str] = None
    role: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def actor(self) -> str:
        return self.user or "anonymous"


_ANONYMOUS = AccessContext()

_access_context_var: contextvars.ContextVar[AccessContext] = contextvars.ContextVar(
    "access_context", default=_ANONYMOUS
)


def current_access_context() -> AccessContext:
    """Get the access context of the current thread/task."""
    return _access_context_var.get()


class AccessScope:
    """
    Context manager that sets the caller identity for store calls.

    Scopes nest; leaving a scope restores the outer identity.
    """

    def __init__(self, user: Optional[str] = None, role: Optional[str] = None, **attributes: Any):
        self.context = AccessContext(user=user, role=role, attributes=dict(attributes))
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> AccessContext:
        self._token = _access_context_var.set(self.context)
        return self.context

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _access_context_var.reset(self._token)
            self._token = None


@dataclass
class AccessDecision:
    """Result of an access check."""
    allowed: bool
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def allow(cls, reason: str = "allowed") -> "AccessDecision":
        return cls(allowed=True, reason=reason)

    @classmethod
    def deny(cls, reason: str) -> "AccessDecision":
        return cls(allowed=False, reason=reason)

    @classmethod
    def coerce(cls, result: Union["AccessDecision", bool]) -> "AccessDecision":
        """Custom policies may answer with a plain bool."""
        if isinstance(result, cls):
            return result
        return cls.allow("custom policy") if result else cls.deny("custom policy denied")

    def __bool__(self) -> bool:
        return self.allowed


@runtime_checkable
class AccessControlPolicy(Protocol):
    """Anything with a check() answering allow/deny can guard a secure store."""

    def check(
        self,
        operation: str,
        resource_id: Optional[str],
        context: AccessContext,
    ) -> Union[AccessDecision, bool]:
        ...


class AccessPolicy:
    """
    Reference access policy.

    Allowlists are optional: an empty `users` or `roles` list places no
    restriction on that dimension.
    """

    def __init__(
        self,
        enabled: bool = False,
        roles: Optional[Iterable[str]] = None,
        users: Optional[Iterable[str]] = None,
    ):
        self.enabled = enabled
        self.roles: Set[str] = set(roles or [])
        self.users: Set[str] = set(users or [])
        self._blocked: Set[str] = set()
        self._logger = logging.getLogger("agentmem.security.access")

    @classmethod
    def from_config(cls, config: Any) -> "AccessPolicy":
        """Build from an AccessControlConfig (or anything with the same fields)."""
        return cls(enabled=config.enabled, roles=config.roles, users=config.users)

    def check(
        self,
        operation: str,
        resource_id: Optional[str],
        context: Optional[AccessContext] = None,
    ) -> AccessDecision:
        """
        Check if an operation is permitted for the calling context.

        Args:
            operation: Store operation name (e.g. "get_item")
            resource_id: Conversation id or item key, None for creation/search
            context: Caller identity (defaults to the current AccessScope)

        Returns:
            AccessDecision
        """
        if not self.enabled:
            return AccessDecision.allow("access control disabled")

        context = context or current_access_context()
        target = f"{operation}({resource_id or '-'})"

        if operation in self._blocked:
            self._logger.warning(f"Access DENIED (blocked): {target} by {context.actor}")
            return AccessDecision.deny(f"operation {operation} is blocked")

        if context.user is not None and self.users and context.user not in self.users:
            self._logger.warning(f"Access DENIED (user): {target} by {context.actor}")
            return AccessDecision.deny(f"user {context.user} is not allowed")

        if context.role is not None and self.roles and context.role not in self.roles:
            self._logger.warning(
                f"Access DENIED (role): {target} by {context.actor} as {context.role}"
            )
            return AccessDecision.deny(f"role {context.role} is not allowed")

        self._logger.info(f"Access GRANTED: {target} by {context.actor}")
        return AccessDecision.allow()

    def block(self, operation: str) -> None:
        """Deny an operation for every caller."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        self._blocked.add(operation)
        self._logger.info(f"Operation blocked: {operation}")

    def unblock(self, operation: str) -> None:
        self._blocked.discard(operation)

    def get_status(self) -> Dict[str, Any]:
        """Get current policy status."""
        return {
            "enabled": self.enabled,
            "roles": sorted(self.roles),
            "users": sorted(self.users),
            "blocked": sorted(self._blocked),
        }
