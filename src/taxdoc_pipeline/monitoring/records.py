"""
Metric record types.

All records carry a ``timestamp`` in epoch seconds; the collector evicts by
that timestamp.
"""

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class ProcessingRecord:
    """Outcome of one processing attempt."""

    timestamp: float
    file_name: str
    strategy: str
    duration_ms: float
    success: bool
    confidence: float = 0.0
    document_hash: str | None = None
    file_size: int = 0
    error_code: str | None = None
    error_message: str | None = None
    tax_amount: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SystemRecord:
    """Process resource snapshot."""

    timestamp: float
    cpu_percent: float
    memory_mb: float
    active_threads: int
    queue_length: int = 0
    cache_hit_rate: float = 0.0
    throughput_per_hour: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QualityRecord:
    """Data quality and VAT compliance of one extraction."""

    timestamp: float
    document_hash: str
    data_quality_score: float
    confidence_score: float
    extraction_method: str
    validation_issues: tuple[str, ...] = field(default_factory=tuple)
    vat_compliant: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["validation_issues"] = list(self.validation_issues)
        return data


@dataclass(frozen=True)
class ErrorOccurrence:
    """One reported error."""

    timestamp: float
    code: str
    message: str
    recoverable: bool
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
