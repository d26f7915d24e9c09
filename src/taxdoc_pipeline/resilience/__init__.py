"""
Error & resilience kernel.

Provides:
- Typed error taxonomy (stable codes, recoverable flag, context)
- CircuitBreaker: per-service state machine with hard call timeout
- RetryHandler: capped exponential backoff for recoverable errors
- DegradationRegistry: explicit service -> fallback mapping
- ResourceGuard: memory check before large operations
- ResilienceKernel: glue owning all of the above
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerState, CircuitState
from .degradation import DegradationRegistry
from .errors import (
    CircuitBreakerOpenError,
    ExtractionFailedError,
    InvalidInputError,
    NoFallbackAvailableError,
    PipelineError,
    ProcessingTimeoutError,
    ResourceLimitExceededError,
    TemplateConflictError,
    VisionServiceError,
)
from .health import HealthRegistry, HealthStatus
from .kernel import ResilienceKernel
from .resources import ResourceGuard
from .retry import RetryHandler, RetryStats, is_recoverable

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "DegradationRegistry",
    "HealthRegistry",
    "HealthStatus",
    "ResilienceKernel",
    "ResourceGuard",
    "RetryHandler",
    "RetryStats",
    "is_recoverable",
    "PipelineError",
    "InvalidInputError",
    "ProcessingTimeoutError",
    "CircuitBreakerOpenError",
    "ResourceLimitExceededError",
    "NoFallbackAvailableError",
    "VisionServiceError",
    "ExtractionFailedError",
    "TemplateConflictError",
]
