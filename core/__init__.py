# Core module - Error taxonomy and reliability primitives
# Shared by every store: typed errors, caller-side retries, circuit breaker

from .errors import (
    ErrorCategory, MemoryStoreError,
    NotFoundError, UnavailableError, AccessDeniedError,
    DecryptionFailedError, ValidationError, ConfigurationError,
    RetryPolicy, call_with_retry,
)
from .circuit_breaker import CircuitBreaker, CircuitState, CircuitOpenError

__all__ = [
    "ErrorCategory", "MemoryStoreError",
    "NotFoundError", "UnavailableError", "AccessDeniedError",
    "DecryptionFailedError", "ValidationError", "ConfigurationError",
    "RetryPolicy", "call_with_retry",
    "CircuitBreaker", "CircuitState", "CircuitOpenError",
]
