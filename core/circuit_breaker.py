"""
Circuit Breaker
----------------
Stops hammering a durable table that keeps failing.

Design:
- One breaker per key-value table
- State machine: CLOSED → OPEN → HALF_OPEN → CLOSED
- Thread-safe state transitions
- Rejected calls raise CircuitOpenError, an UnavailableError, so callers
  see the same error shape as a real table outage
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional, TypeVar
import logging
import threading

from .errors import UnavailableError

T = TypeVar('T')


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()      # Normal operation
    OPEN = auto()        # Failing, reject calls
    HALF_OPEN = auto()   # Testing recovery


class CircuitOpenError(UnavailableError):
    """Raised when circuit is open and call is rejected."""

    def __init__(self, breaker_name: str, remaining_seconds: float):
        self.breaker_name = breaker_name
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit '{breaker_name}' is OPEN. "
            f"Retry in {remaining_seconds:.1f}s",
            details={"breaker": breaker_name, "remaining_seconds": remaining_seconds},
        )


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for durable table calls.

    Only UnavailableError counts as a failure: a missing key or a bad
    argument says nothing about the health of the table.
    """
    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0  # Seconds before half-open
    success_threshold: int = 1      # Successes in half-open to close

    # Internal state (not part of constructor signature)
    _state: CircuitState = field(default=CircuitState.CLOSED, repr=False)
    _failure_count: int = field(default=0, repr=False)
    _success_count: int = field(default=0, repr=False)
    _last_failure_time: Optional[datetime] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        self._logger = logging.getLogger(f"agentmem.circuit.{self.name}")

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for timeout transitions."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._should_attempt_recovery():
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                self._logger.info(f"Circuit {self.name}: OPEN → HALF_OPEN")
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _should_attempt_recovery(self) -> bool:
        if self._last_failure_time is None:
            return True
        elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
        return elapsed >= self.recovery_timeout

    def _get_remaining_timeout(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
        return max(0.0, self.recovery_timeout - elapsed)

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """
        Execute function with circuit breaker protection.

        Raises CircuitOpenError if circuit is open.
        """
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(self.name, self._get_remaining_timeout())

        try:
            result = func(*args, **kwargs)
        except UnavailableError:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._success_count = 0
                    self._logger.info(f"Circuit {self.name}: HALF_OPEN → CLOSED (recovered)")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning(f"Circuit {self.name}: HALF_OPEN → OPEN (failure during test)")
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    self._logger.warning(
                        f"Circuit {self.name}: CLOSED → OPEN "
                        f"(failures={self._failure_count})"
                    )

    def reset(self) -> None:
        """Force reset to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._logger.info(f"Circuit {self.name}: RESET → CLOSED")

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.name,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
            }
