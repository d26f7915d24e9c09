"""
Typed error taxonomy for the pipeline.

Every error carries a stable ``code``, a ``recoverable`` flag and a structured
``context`` dict so the monitoring layer can count and trend occurrences.

Recoverable errors may be retried; non-recoverable errors must be surfaced
(or degraded by the orchestrator) but never retried blindly.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code: str = "PIPELINE_ERROR"
    recoverable: bool = True

    def __init__(
        self,
        message: str,
        code: str | None = None,
        recoverable: bool | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable
        self.context: dict[str, Any] = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class InvalidInputError(PipelineError):
    """Document is structurally invalid. Never retried."""

    code = "INVALID_INPUT"
    recoverable = False

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message, context={"errors": list(errors or [])})
        self.errors = list(errors or [])


class ProcessingTimeoutError(PipelineError):
    """An external call exceeded its hard timeout."""

    code = "PROCESSING_TIMEOUT"
    recoverable = True

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Operation {operation} timed out after {timeout_seconds:.1f}s",
            context={"operation": operation, "timeout_seconds": timeout_seconds},
        )


class CircuitBreakerOpenError(PipelineError):
    """Circuit is open; the caller should not retry immediately."""

    code = "CIRCUIT_BREAKER_OPEN"
    recoverable = False

    def __init__(self, service: str, failure_count: int):
        super().__init__(
            f"Circuit breaker open for {service} after {failure_count} failures",
            context={"service": service, "failure_count": failure_count},
        )
        self.service = service


class ResourceLimitExceededError(PipelineError):
    """Process resources exceed the configured limit. Retry after shedding load."""

    code = "RESOURCE_LIMIT_EXCEEDED"
    recoverable = True

    def __init__(self, memory_mb: float, threshold_mb: float):
        super().__init__(
            f"Memory usage ({memory_mb:.0f}MB) exceeds threshold ({threshold_mb:.0f}MB)",
            context={"memory_mb": round(memory_mb, 1), "threshold_mb": threshold_mb},
        )


class NoFallbackAvailableError(PipelineError):
    """No degradation fallback is registered for a service."""

    code = "NO_FALLBACK_AVAILABLE"
    recoverable = False

    def __init__(self, service: str):
        super().__init__(
            f"No fallback available for service: {service}",
            context={"service": service},
        )


class VisionServiceError(PipelineError):
    """The vision inference service failed.

    Recoverability depends on the cause: transport errors, rate limits and
    server errors are transient; client errors and unusable payloads are not.
    """

    code = "VISION_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        recoverable: bool = True,
        status_code: int | None = None,
    ):
        super().__init__(
            message,
            recoverable=recoverable,
            context={"status_code": status_code} if status_code is not None else {},
        )
        self.status_code = status_code


class ExtractionFailedError(PipelineError):
    """A strategy ran but produced nothing usable."""

    code = "EXTRACTION_FAILED"
    recoverable = False

    def __init__(self, strategy: str, reason: str):
        super().__init__(
            f"{strategy} extraction failed: {reason}",
            context={"strategy": strategy, "reason": reason},
        )
        self.reason = reason


class TemplateConflictError(PipelineError):
    """Optimistic template write kept losing to concurrent writers."""

    code = "TEMPLATE_WRITE_CONFLICT"
    recoverable = True

    def __init__(self, template_id: str, attempts: int):
        super().__init__(
            f"Template {template_id} changed concurrently {attempts} times",
            context={"template_id": template_id, "attempts": attempts},
        )
