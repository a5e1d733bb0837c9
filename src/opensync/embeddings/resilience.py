"""Circuit breaker for query-time embedding calls.

Search embeds the query text inside the request. When the provider is down
the breaker opens so requests fall back to full-text results immediately
instead of waiting on a timeout each time.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypeVar

from opensync.exceptions import UpstreamProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # Normal, requests flow through
    OPEN = "open"  # Tripped, requests fail fast
    HALF_OPEN = "half_open"  # Probing, one request allowed


class CircuitOpenError(UpstreamProviderError):
    """Raised when the circuit breaker is open and requests are rejected."""


@dataclass
class CircuitBreaker:
    """Circuit breaker for embedding provider calls.

    Tracks consecutive failures. When the threshold is reached, the circuit
    opens and all calls fail fast for ``reset_timeout`` seconds. After that,
    a single trial request is allowed (half-open). If it succeeds the circuit
    closes; if it fails, the circuit re-opens.
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failure_count: int = field(default=0, init=False, repr=False)
    _last_failure_time: float = field(default=0.0, init=False, repr=False)
    _total_trips: int = field(default=0, init=False, repr=False)
    _trial_in_flight: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Circuit breaker entering HALF_OPEN, allowing trial request")
        return self._state

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit breaker CLOSED, embedding provider recovered")
            self._failure_count = 0
            self._trial_in_flight = False
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            self._trial_in_flight = False
            if self._failure_count >= self.failure_threshold or (
                self._state == CircuitState.HALF_OPEN
            ):
                if self._state != CircuitState.OPEN:
                    self._total_trips += 1
                    logger.warning(
                        f"Circuit breaker OPEN after {self._failure_count} consecutive "
                        f"failures (trip #{self._total_trips}), "
                        f"probing again in {self.reset_timeout}s"
                    )
                self._state = CircuitState.OPEN

    def allow_request(self) -> bool:
        with self._lock:
            state = self.state
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open
            UpstreamProviderError: If ``fn`` fails (counted as a failure)
        """
        if not self.allow_request():
            raise CircuitOpenError("Embedding provider circuit is open")
        try:
            result = fn(*args, **kwargs)
        except UpstreamProviderError:
            self.record_failure()
            raise
        self.record_success()
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self._failure_count,
            "total_trips": self._total_trips,
        }
