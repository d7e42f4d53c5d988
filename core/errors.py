"""
Error Handling Module
---------------------
Typed errors for the memory stores, with classification and retry policy.

Rules:
- Caller-path errors always surface
- Only UNAVAILABLE is retried, and only by the caller (stores never retry)
- Background reconciliation errors are logged and re-queued, never raised
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional, TypeVar
import logging
import time

T = TypeVar("T")


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""
    NOT_FOUND = auto()           # Id/key absent from the target store
    UNAVAILABLE = auto()         # Durable table unreachable or erroring
    ACCESS_DENIED = auto()       # Access policy rejected the operation
    DECRYPTION_FAILED = auto()   # Ciphertext corrupt or key mismatch
    VALIDATION_ERROR = auto()    # Bad argument from the caller
    CONFIGURATION_ERROR = auto() # Bad construction-time configuration


class MemoryStoreError(Exception):
    """
    Base error for every memory store failure.

    Carries a category and optional details so callers never need to know
    which store topology raised it.
    """

    category: ErrorCategory = ErrorCategory.VALIDATION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.category.name}: {self.message})"


class NotFoundError(MemoryStoreError, KeyError):
    """Operation referenced a conversation id or item key the store does not hold."""
    category = ErrorCategory.NOT_FOUND


class UnavailableError(MemoryStoreError):
    """Durable table unreachable or failing. Local state is left untouched."""
    category = ErrorCategory.UNAVAILABLE


class AccessDeniedError(MemoryStoreError):
    """Access policy denied the operation before the wrapped store was touched."""
    category = ErrorCategory.ACCESS_DENIED

    def __init__(self, operation: str, resource_id: str, reason: str = "policy denied"):
        super().__init__(
            f"Access denied: {operation} on {resource_id} ({reason})",
            details={"operation": operation, "resource_id": resource_id, "reason": reason},
        )
        self.operation = operation
        self.resource_id = resource_id


class DecryptionFailedError(MemoryStoreError):
    """Ciphertext could not be authenticated or decoded. Recovered inside the secure store."""
    category = ErrorCategory.DECRYPTION_FAILED


class ValidationError(MemoryStoreError, ValueError):
    """Invalid argument supplied by the caller."""
    category = ErrorCategory.VALIDATION_ERROR


class ConfigurationError(MemoryStoreError, ValueError):
    """Invalid construction-time configuration."""
    category = ErrorCategory.CONFIGURATION_ERROR


@dataclass
class RetryPolicy:
    """
    Caller-side retry policy per error category.

    Critical: only transient durable failures are retried. Not-found,
    access-denied and validation errors need a fix, not a retry.
    """

    max_retries: Dict[ErrorCategory, int] = field(default_factory=lambda: {
        ErrorCategory.UNAVAILABLE: 2,
    })
    retry_delays: Dict[ErrorCategory, float] = field(default_factory=lambda: {
        ErrorCategory.UNAVAILABLE: 0.2,
    })
    backoff: float = 2.0

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Check if an operation should be retried after `attempt` failures."""
        if not isinstance(error, MemoryStoreError):
            return False
        return attempt < self.max_retries.get(error.category, 0)

    def get_delay(self, error: MemoryStoreError, attempt: int) -> float:
        """Get delay before the next retry in seconds (exponential backoff)."""
        base = self.retry_delays.get(error.category, 0.0)
        return base * (self.backoff ** attempt)

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """Policy that surfaces the first failure."""
        return cls(max_retries={}, retry_delays={})


def call_with_retry(
    func: Callable[..., T],
    *args,
    policy: Optional[RetryPolicy] = None,
    operation: str = "",
    **kwargs
) -> T:
    """
    Run `func` and retry it while the policy allows.

    The last error is re-raised unchanged once retries are exhausted.
    """
    policy = policy or RetryPolicy()
    logger = logging.getLogger("agentmem.errors")
    attempt = 0

    while True:
        try:
            return func(*args, **kwargs)
        except MemoryStoreError as e:
            if not policy.should_retry(e, attempt):
                raise
            delay = policy.get_delay(e, attempt)
            attempt += 1
            logger.warning(
                f"Retrying {operation or getattr(func, '__name__', 'call')} "
                f"after {e.category.name} (attempt {attempt}, delay {delay:.2f}s): {e}"
            )
            if delay > 0:
                time.sleep(delay)
