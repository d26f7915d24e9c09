"""
Retry with capped exponential backoff.

Delay before attempt n+1 is ``min(base_delay * 2 ** (n - 1), max_delay)``.
Only recoverable PipelineErrors are retried by default; the last error is
re-raised unchanged once the attempt budget is spent.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_recoverable(error: BaseException) -> bool:
    """Default retry predicate: only recoverable pipeline errors."""
    return isinstance(error, PipelineError) and error.recoverable


@dataclass
class RetryStats:
    """Cumulative retry counters."""

    calls: int = 0
    attempts: int = 0
    retries: int = 0
    exhausted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "calls": self.calls,
            "attempts": self.attempts,
            "retries": self.retries,
            "exhausted": self.exhausted,
        }


class RetryHandler:
    """Runs an operation with a bounded number of attempts."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            max_retries: Total attempts per execute() call (>= 1)
            base_delay: Delay in seconds after the first failure
            max_delay: Upper bound for any single delay
            sleep: Sleep function (injectable for tests)
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats = RetryStats()

    @property
    def stats(self) -> RetryStats:
        """Copy of the cumulative counters."""
        with self._lock:
            return RetryStats(**self._stats.to_dict())

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def execute(
        self,
        operation: Callable[[], T],
        should_retry: Callable[[BaseException], bool] | None = None,
        operation_name: str = "operation",
    ) -> T:
        """
        Execute an operation, retrying on recoverable failures.

        Args:
            operation: Zero-argument callable
            should_retry: Predicate deciding whether an error is retryable
            operation_name: Label for log messages

        Returns:
            The operation's result

        Raises:
            The last error raised by the operation
        """
        predicate = should_retry or is_recoverable

        with self._lock:
            self._stats.calls += 1

        attempt = 0
        while True:
            attempt += 1
            with self._lock:
                self._stats.attempts += 1

            try:
                return operation()
            except Exception as e:
                if not predicate(e):
                    raise

                if attempt >= self.max_retries:
                    with self._lock:
                        self._stats.exhausted += 1
                    logger.warning(
                        "%s failed after %d attempts: %s", operation_name, attempt, e
                    )
                    raise

                delay = self.delay_for(attempt)
                with self._lock:
                    self._stats.retries += 1
                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.2fs",
                    operation_name,
                    attempt,
                    self.max_retries,
                    e,
                    delay,
                )
                self._sleep(delay)
