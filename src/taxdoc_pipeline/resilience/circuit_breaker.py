"""
Circuit breaker for external dependencies.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls rejected without invoking the operation
    HALF_OPEN: Recovery window elapsed, one trial call allowed

Transitions only follow CLOSED -> OPEN -> HALF_OPEN -> (CLOSED | OPEN).
Every call is also bounded by a hard timeout which counts as a failure.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import CircuitBreakerOpenError, ProcessingTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time view of a breaker, used for health and metrics."""

    service: str
    state: CircuitState
    failure_count: int
    last_failure_time: float | None
    total_calls: int
    rejected_calls: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "service": self.service,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "total_calls": self.total_calls,
            "rejected_calls": self.rejected_calls,
        }


class CircuitBreaker:
    """
    Per-service circuit breaker with a hard call timeout.

    Thread-safe: every state transition happens under a single lock so
    concurrent outcomes for the same service cannot lose updates.
    """

    def __init__(
        self,
        service: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        call_timeout: float | None = 30.0,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        listener: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            service: Logical name of the downstream dependency
            failure_threshold: Consecutive failures before opening
            recovery_timeout: Seconds to stay OPEN before a trial call
            call_timeout: Hard timeout per call in seconds (None = no timeout)
            max_workers: Worker threads used to enforce the call timeout
            clock: Monotonic time source (injectable for tests)
            listener: Optional callback (service, old_state, new_state)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        self.service = service
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.call_timeout = call_timeout
        self._clock = clock
        self._listener = listener

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._last_failure_time: float | None = None
        self._trial_in_flight = False
        self._total_calls = 0
        self._rejected_calls = 0

        self._executor: ThreadPoolExecutor | None = None
        if call_timeout is not None:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix=f"breaker-{service}",
            )

    @property
    def state(self) -> CircuitState:
        """Current state (OPEN is reported until a call moves it to HALF_OPEN)."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def allows_requests(self) -> bool:
        """Check whether a call would be attempted right now, without side effects."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                return not self._trial_in_flight
            return self._recovery_elapsed()

    def snapshot(self) -> CircuitBreakerState:
        """Get a consistent snapshot of the breaker."""
        with self._lock:
            return CircuitBreakerState(
                service=self.service,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                total_calls=self._total_calls,
                rejected_calls=self._rejected_calls,
            )

    def call(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Invoke an operation through the breaker.

        Raises:
            CircuitBreakerOpenError: Circuit is open (operation not invoked)
            ProcessingTimeoutError: Operation exceeded call_timeout
            Exception: Whatever the operation raised (after recording the failure)
        """
        self._before_call()

        try:
            result = self._invoke(operation, *args, **kwargs)
        except BaseException:
            self._record_failure()
            raise

        self._record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False

    def close(self) -> None:
        """Release the timeout worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _before_call(self) -> None:
        with self._lock:
            self._total_calls += 1

            if self._state == CircuitState.OPEN:
                if not self._recovery_elapsed():
                    self._rejected_calls += 1
                    raise CircuitBreakerOpenError(self.service, self._failure_count)
                self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                # Only one trial call at a time while probing recovery
                if self._trial_in_flight:
                    self._rejected_calls += 1
                    raise CircuitBreakerOpenError(self.service, self._failure_count)
                self._trial_in_flight = True

    def _invoke(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._executor is None or self.call_timeout is None:
            return operation(*args, **kwargs)

        future = self._executor.submit(operation, *args, **kwargs)
        try:
            return future.result(timeout=self.call_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ProcessingTimeoutError(self.service, self.call_timeout) from None

    def _record_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
                self._opened_at = None

    def _record_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._open()

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _recovery_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.recovery_timeout

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state

        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker OPEN for %s after %d failures",
                self.service,
                self._failure_count,
            )
        else:
            logger.info(
                "Circuit breaker for %s: %s -> %s",
                self.service,
                old_state.value,
                new_state.value,
            )

        if self._listener is not None:
            self._listener(self.service, old_state, new_state)
