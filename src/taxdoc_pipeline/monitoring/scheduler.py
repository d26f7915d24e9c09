"""
Fixed-interval background jobs.

Each job runs on its own thread and through its own circuit breaker, so a
job that keeps failing is suspended for the recovery window instead of
spamming the log every tick. ``stop()`` joins the thread.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from ..resilience.circuit_breaker import CircuitBreaker
from ..resilience.errors import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Runs ``fn`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Any],
        breaker: CircuitBreaker | None = None,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._fn = fn
        self.breaker = breaker or CircuitBreaker(
            f"job:{name}",
            failure_threshold=3,
            recovery_timeout=max(interval * 5, 60.0),
            call_timeout=None,
        )
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"periodic-{self.name}", daemon=True
        )
        self._thread.start()
        logger.debug("Started periodic job %s (every %.0fs)", self.name, self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Periodic job %s did not stop within %.1fs", self.name, timeout)
        self._thread = None

    def run_once(self) -> bool:
        """Run one tick. Returns True if the job ran successfully."""
        try:
            self.breaker.call(self._fn)
        except CircuitBreakerOpenError:
            logger.debug("Periodic job %s suspended (circuit open)", self.name)
            return False
        except Exception:
            self.failures += 1
            logger.exception("Periodic job %s failed", self.name)
            return False
        self.runs += 1
        return True

    def _loop(self) -> None:
        if self._run_immediately:
            self.run_once()
        while not self._stop.wait(self.interval):
            self.run_once()

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "interval_seconds": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "breaker": self.breaker.snapshot().to_dict(),
        }
