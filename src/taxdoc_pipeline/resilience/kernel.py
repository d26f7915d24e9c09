"""
Resilience kernel: the single entry point for calls to unreliable services.

``execute(service, op)`` wraps the operation in the service's circuit breaker
(with its hard timeout) and the shared retry handler. Breakers are created
lazily, one per logical service, and live as long as the kernel.
"""

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeVar

from .circuit_breaker import CircuitBreaker, CircuitBreakerState, CircuitState
from .degradation import DegradationRegistry
from .errors import PipelineError
from .health import HealthRegistry, HealthStatus
from .resources import ResourceGuard
from .retry import RetryHandler

if TYPE_CHECKING:
    from ..config import ResilienceConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilienceKernel:
    """Owns breakers, retry policy, fallbacks, resource guard and health checks."""

    def __init__(
        self,
        config: "ResilienceConfig | None" = None,
        retry: RetryHandler | None = None,
        degradation: DegradationRegistry | None = None,
        resource_guard: ResourceGuard | None = None,
        health: HealthRegistry | None = None,
        error_reporter: Callable[[PipelineError, dict], None] | None = None,
    ):
        if config is None:
            from ..config import ResilienceConfig

            config = ResilienceConfig()

        self.config = config
        self.retry = retry or RetryHandler(
            max_retries=config.max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
        )
        self.degradation = degradation or DegradationRegistry()
        self.resource_guard = resource_guard or ResourceGuard(config.memory_threshold_mb)
        self.health_registry = health or HealthRegistry()
        self._error_reporter = error_reporter

        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def set_error_reporter(self, reporter: Callable[[PipelineError, dict], None]) -> None:
        self._error_reporter = reporter

    def add_breaker(self, breaker: CircuitBreaker) -> CircuitBreaker:
        """Install a pre-built breaker (e.g. with a test clock)."""
        with self._lock:
            existing = self._breakers.get(breaker.service)
            if existing is not None:
                existing.close()
            self._breakers[breaker.service] = breaker
        return breaker

    def breaker(self, service: str) -> CircuitBreaker:
        """Get or lazily create the breaker for a service."""
        with self._lock:
            breaker = self._breakers.get(service)
            if breaker is None:
                breaker = CircuitBreaker(
                    service,
                    failure_threshold=self.config.failure_threshold,
                    recovery_timeout=self.config.recovery_timeout_seconds,
                    call_timeout=self.config.call_timeout_seconds,
                )
                self._breakers[service] = breaker
            return breaker

    def is_available(self, service: str) -> bool:
        """True if the service's breaker would currently attempt a call."""
        return self.breaker(service).allows_requests()

    def execute(self, service: str, operation: Callable[[], T]) -> T:
        """
        Run an operation through the service's breaker, retrying recoverable errors.

        Every pipeline error seen on any attempt is reported; non-pipeline
        errors propagate untouched.
        """
        breaker = self.breaker(service)

        def attempt() -> T:
            try:
                return breaker.call(operation)
            except PipelineError as e:
                self._report(e, {"service": service})
                raise

        return self.retry.execute(attempt, operation_name=service)

    def breaker_states(self) -> list[CircuitBreakerState]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.snapshot() for b in breakers]

    def health(self) -> list[HealthStatus]:
        """Breaker states merged with registered health checks."""
        statuses = [
            HealthStatus(
                service=f"breaker:{state.service}",
                healthy=state.state != CircuitState.OPEN,
                error=(
                    f"circuit {state.state.value} after {state.failure_count} failures"
                    if state.state != CircuitState.CLOSED
                    else None
                ),
            )
            for state in self.breaker_states()
        ]
        statuses.extend(self.health_registry.check_health())
        return statuses

    def close(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.close()

    def _report(self, error: PipelineError, context: dict) -> None:
        if self._error_reporter is not None:
            self._error_reporter(error, context)
