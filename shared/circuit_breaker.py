"""
Circuit breaker protecting calls to external collaborators.
"""

import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised when a call is short-circuited by an open breaker."""


class CircuitBreaker:
    """Counts consecutive failures and rejects calls while open.

    State transitions are guarded by a lock because the breaker is shared
    between the request path and background delivery threads.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 name: str = "default"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0

    def _allow_call(self) -> bool:
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                if (time.monotonic() - self._last_failure_time) < self.recovery_timeout:
                    return False
                self._state = CircuitBreakerState.HALF_OPEN
                self.logger.info("Circuit breaker transitioning to half-open")
            return True

    def record_success(self):
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                self.logger.info("Circuit breaker reset to closed")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0

    def record_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            if (self._state == CircuitBreakerState.HALF_OPEN
                    or self._failure_count >= self.failure_threshold):
                if self._state != CircuitBreakerState.OPEN:
                    self.logger.warning(
                        "Circuit breaker opened",
                        failure_count=self._failure_count,
                        threshold=self.failure_threshold
                    )
                self._state = CircuitBreakerState.OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute an async callable with circuit breaker protection."""
        if not self._allow_call():
            raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is open")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN

    def get_state(self) -> Dict[str, Any]:
        """Snapshot of the breaker for stats endpoints."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }
