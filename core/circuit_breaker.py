"""
Circuit Breaker
----------------
Prevents cascading failures by isolating a failing upstream provider.

Design:
- Scoped per API client (one breaker per provider)
- State machine: CLOSED → OPEN → HALF_OPEN → CLOSED
- Thread-safe state transitions
- Exactly one trial call while HALF_OPEN

State Transitions:
- CLOSED: Normal operation, counting consecutive failures
- OPEN: Rejecting calls, waiting for recovery timeout
- HALF_OPEN: One trial call decides between CLOSED and OPEN
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar
import asyncio
import logging
import threading
import time

from core.errors import AuthenticationError, CircuitOpenError, ValidationError

T = TypeVar('T')


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject calls
    HALF_OPEN = "half-open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration for one client."""
    enabled: bool = True
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # Seconds before half-open


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for one upstream provider.

    Prevents cascading failures by:
    1. Counting consecutive failures
    2. Opening circuit after threshold
    3. Rejecting calls while open, without invoking them
    4. Letting a single trial call through once the recovery timeout elapses
    """
    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    enabled: bool = True
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    # Caller-side errors: never counted against the upstream provider
    excluded: Tuple[Type[BaseException], ...] = field(
        default=(ValidationError, AuthenticationError), repr=False
    )

    # Internal state (not part of constructor signature)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failure_count: int = field(default=0, init=False, repr=False)
    _last_failure_time: Optional[float] = field(default=None, init=False, repr=False)
    _next_attempt_time: Optional[float] = field(default=None, init=False, repr=False)
    _trial_in_flight: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self):
        self._logger = logging.getLogger(f"apiclient.circuit.{self.name}")

    @classmethod
    def from_config(
        cls,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout,
            enabled=config.enabled,
            clock=clock,
        )

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for timeout transitions."""
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _maybe_half_open(self) -> None:
        """OPEN → HALF_OPEN once the recovery timeout has elapsed. Caller holds the lock."""
        if self._state != CircuitState.OPEN:
            return
        if self._next_attempt_time is None or self.clock() >= self._next_attempt_time:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self._logger.info(f"Circuit {self.name}: OPEN → HALF_OPEN")

    def _get_remaining_timeout(self) -> float:
        """Get seconds remaining before recovery attempt. Caller holds the lock."""
        if self._next_attempt_time is None:
            return 0.0
        return max(0.0, self._next_attempt_time - self.clock())

    def _acquire(self) -> CircuitState:
        """
        Admit or reject one call. Returns the state the call was admitted under.

        The whole check-then-act runs under the lock so two concurrent
        callers can never both claim the half-open trial slot.
        """
        with self._lock:
            self._maybe_half_open()

            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(self.name, self._get_remaining_timeout())

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True
            return self._state

    def _release_trial(self, admitted: CircuitState) -> None:
        """Give back a claimed trial slot without recording an outcome."""
        with self._lock:
            if admitted == CircuitState.HALF_OPEN and self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async operation with circuit breaker protection.

        Raises CircuitOpenError without invoking the operation if the
        circuit is open (or a half-open trial is already running).
        Cancellation and excluded (caller-side) errors leave the breaker
        state untouched.
        """
        if not self.enabled:
            return await operation()

        admitted = self._acquire()

        try:
            result = await operation()
        except asyncio.CancelledError:
            self._release_trial(admitted)
            raise
        except self.excluded:
            self._release_trial(admitted)
            raise
        except Exception:
            self.record_failure()
            raise

        with self._lock:
            self._success(admitted)
        return result

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._success(self._state)

    def _success(self, admitted: CircuitState) -> None:
        """
        Apply a success for a call admitted under `admitted`. Caller holds the lock.

        Only the half-open trial closes the circuit. A late success from a
        call admitted before the circuit opened changes nothing.
        """
        if self._state == CircuitState.HALF_OPEN:
            if admitted != CircuitState.HALF_OPEN:
                return
            self._logger.info(f"Circuit {self.name}: HALF_OPEN → CLOSED (recovered)")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._next_attempt_time = None
            self._trial_in_flight = False
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            now = self.clock()
            self._failure_count += 1
            self._last_failure_time = now

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open returns to open
                self._state = CircuitState.OPEN
                self._next_attempt_time = now + self.recovery_timeout
                self._trial_in_flight = False
                self._logger.warning(f"Circuit {self.name}: HALF_OPEN → OPEN (trial call failed)")
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    self._next_attempt_time = now + self.recovery_timeout
                    self._logger.warning(
                        f"Circuit {self.name}: CLOSED → OPEN "
                        f"(failures={self._failure_count})"
                    )

    def reset(self) -> None:
        """Force reset to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._next_attempt_time = None
            self._trial_in_flight = False
            self._logger.info(f"Circuit {self.name}: RESET → CLOSED")

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failure_count,
                "last_failure": self._last_failure_time,
                "next_attempt": self._next_attempt_time,
            }
