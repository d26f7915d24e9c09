"""
Metrics collector.

Keeps three bounded, append-only logs (processing, system, quality) plus
error occurrence counts, and derives projections on demand:

- RealTimeStats: the last few minutes, for dashboards and alerting
- AnalyticsSummary: any lookback window, with early-vs-late trend signals

Logs are capped by age and count; whichever limit is stricter evicts the
oldest records first. Summaries are never stored.
"""

import csv
import io
import json
import logging
import threading
import time
from collections import Counter, deque
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

from ..resilience.errors import PipelineError
from .records import ErrorOccurrence, ProcessingRecord, QualityRecord, SystemRecord
from .sampler import SystemSampler, SystemSnapshot

logger = logging.getLogger(__name__)


class _Timestamped(Protocol):
    timestamp: float


R = TypeVar("R", bound=_Timestamped)


class MetricLog(Generic[R]):
    """Thread-safe log bounded by age and count."""

    def __init__(
        self,
        name: str,
        max_age_seconds: float,
        max_records: int,
        clock: Callable[[], float] = time.time,
    ):
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        self.name = name
        self.max_age_seconds = max_age_seconds
        self.max_records = max_records
        self._clock = clock
        self._records: deque[R] = deque()
        self._lock = threading.Lock()
        self.evicted = 0

    def append(self, record: R) -> None:
        with self._lock:
            self._records.append(record)
            self._evict_locked(self._clock())

    def snapshot(self, since: float | None = None) -> list[R]:
        """Records (oldest first), optionally only those at or after ``since``."""
        with self._lock:
            cutoff = self._clock() - self.max_age_seconds
            return [
                r
                for r in self._records
                if r.timestamp >= cutoff and (since is None or r.timestamp >= since)
            ]

    def latest(self) -> R | None:
        with self._lock:
            return self._records[-1] if self._records else None

    def cleanup(self) -> int:
        """Evict everything outside the age window. Returns the number evicted."""
        with self._lock:
            cutoff = self._clock() - self.max_age_seconds
            before = len(self._records)
            self._records = deque(r for r in self._records if r.timestamp >= cutoff)
            removed = before - len(self._records)
            self.evicted += removed
            return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _evict_locked(self, now: float) -> None:
        cutoff = now - self.max_age_seconds
        while self._records and self._records[0].timestamp < cutoff:
            self._records.popleft()
            self.evicted += 1
        # A late-arriving record can already be outside the window
        if self._records and self._records[-1].timestamp < cutoff:
            self._records.pop()
            self.evicted += 1
        while len(self._records) > self.max_records:
            self._records.popleft()
            self.evicted += 1


class Trend(str, Enum):
    """Direction of a quality/latency metric."""

    IMPROVING = "IMPROVING"
    DECLINING = "DECLINING"
    STABLE = "STABLE"


class ThroughputTrend(str, Enum):
    """Direction of document volume."""

    INCREASING = "INCREASING"
    DECREASING = "DECREASING"
    STABLE = "STABLE"


@dataclass(frozen=True)
class RealTimeStats:
    """Rolling window projection (default: last 5 minutes)."""

    window_seconds: float
    sample_size: int
    successful: int
    failed: int
    success_rate: float
    average_processing_time_ms: float
    average_confidence: float
    throughput_per_hour: float
    current_memory_mb: float | None = None
    current_cpu_percent: float | None = None
    queue_length: int | None = None
    cache_hit_rate: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StrategyStats:
    """Per-strategy slice of a summary."""

    count: int
    success_rate: float
    average_processing_time_ms: float
    average_confidence: float


@dataclass(frozen=True)
class AnalyticsSummary:
    """Projection over a lookback window. Never persisted."""

    hours_back: float
    generated_at: str
    total_documents: int
    successful: int
    failed: int
    success_rate: float
    average_processing_time_ms: float
    average_confidence: float
    throughput_per_hour: float
    total_tax_amount: float
    strategy_breakdown: dict[str, StrategyStats]
    hourly_throughput: list[tuple[str, int]]
    average_quality_score: float
    vat_compliance_rate: float
    validation_issue_count: int
    average_cpu_percent: float
    average_memory_mb: float
    peak_memory_mb: float
    processing_time_trend: Trend
    quality_trend: Trend
    throughput_trend: ThroughputTrend
    error_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["processing_time_trend"] = self.processing_time_trend.value
        data["quality_trend"] = self.quality_trend.value
        data["throughput_trend"] = self.throughput_trend.value
        data["hourly_throughput"] = [list(item) for item in self.hourly_throughput]
        return data


def _mean(values: Iterable[float]) -> float:
    items = list(values)
    return sum(items) / len(items) if items else 0.0


def classify_trend(
    early: float, late: float, band: float, lower_is_better: bool = False
) -> Trend:
    """
    Compare late against early with a relative tolerance band.

    For latency (lower_is_better) late < early*(1-band) is IMPROVING;
    for quality late > early*(1+band) is IMPROVING.
    """
    if early <= 0:
        return Trend.STABLE
    if lower_is_better:
        if late < early * (1 - band):
            return Trend.IMPROVING
        if late > early * (1 + band):
            return Trend.DECLINING
        return Trend.STABLE
    if late > early * (1 + band):
        return Trend.IMPROVING
    if late < early * (1 - band):
        return Trend.DECLINING
    return Trend.STABLE


def classify_throughput(early_count: int, late_count: int, band: float = 0.1) -> ThroughputTrend:
    if early_count == 0:
        return ThroughputTrend.INCREASING if late_count > 0 else ThroughputTrend.STABLE
    if late_count > early_count * (1 + band):
        return ThroughputTrend.INCREASING
    if late_count < early_count * (1 - band):
        return ThroughputTrend.DECREASING
    return ThroughputTrend.STABLE


class MetricsCollector:
    """
    Bounded metric logs with on-demand projections.

    Safe for concurrent writers: each log has its own lock.
    """

    def __init__(
        self,
        max_age_seconds: float = 24 * 3600,
        max_records: int = 10_000,
        realtime_window_seconds: float = 300.0,
        sampler: SystemSampler | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.realtime_window_seconds = realtime_window_seconds
        self.sampler = sampler
        self._clock = clock

        self.processing: MetricLog[ProcessingRecord] = MetricLog(
            "processing", max_age_seconds, max_records, clock
        )
        self.system: MetricLog[SystemRecord] = MetricLog(
            "system", max_age_seconds, max_records, clock
        )
        self.quality: MetricLog[QualityRecord] = MetricLog(
            "quality", max_age_seconds, max_records, clock
        )

        self._errors: deque[ErrorOccurrence] = deque(maxlen=100)
        self._error_counts: Counter[str] = Counter()
        self._error_lock = threading.Lock()

        self._cache_hits = 0
        self._cache_lookups = 0
        self._cache_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_processing(
        self,
        file_name: str,
        strategy: str,
        duration_ms: float,
        success: bool,
        confidence: float = 0.0,
        document_hash: str | None = None,
        file_size: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
        tax_amount: float | None = None,
    ) -> ProcessingRecord:
        record = ProcessingRecord(
            timestamp=self._clock(),
            file_name=file_name,
            strategy=strategy,
            duration_ms=duration_ms,
            success=success,
            confidence=confidence,
            document_hash=document_hash,
            file_size=file_size,
            error_code=error_code,
            error_message=error_message,
            tax_amount=tax_amount,
        )
        self.processing.append(record)
        logger.debug(
            "Recorded %s processing of %s in %.0fms (%s)",
            strategy,
            file_name,
            duration_ms,
            "ok" if success else "failed",
        )
        return record

    def record_system(self, snapshot: SystemSnapshot | None = None) -> SystemRecord | None:
        """Append a system record, sampling one if none is given."""
        if snapshot is None:
            if self.sampler is None:
                return None
            snapshot = self.sampler.sample()

        record = SystemRecord(
            timestamp=self._clock(),
            cpu_percent=snapshot.cpu_percent,
            memory_mb=snapshot.memory_mb,
            active_threads=snapshot.active_threads,
            queue_length=snapshot.queue_length,
            cache_hit_rate=snapshot.cache_hit_rate,
            throughput_per_hour=self._realtime_throughput(),
        )
        self.system.append(record)
        return record

    def record_quality(
        self,
        document_hash: str,
        data_quality_score: float,
        confidence_score: float,
        extraction_method: str,
        validation_issues: Iterable[str] = (),
        vat_compliant: bool = True,
    ) -> QualityRecord:
        record = QualityRecord(
            timestamp=self._clock(),
            document_hash=document_hash,
            data_quality_score=data_quality_score,
            confidence_score=confidence_score,
            extraction_method=extraction_method,
            validation_issues=tuple(validation_issues),
            vat_compliant=vat_compliant,
        )
        self.quality.append(record)
        return record

    def record_error(self, error: BaseException, context: dict[str, Any] | None = None) -> None:
        """Count an error occurrence by code."""
        if isinstance(error, PipelineError):
            code, recoverable = error.code, error.recoverable
            ctx = {**error.context, **(context or {})}
        else:
            code, recoverable = "INTERNAL_ERROR", False
            ctx = dict(context or {})

        occurrence = ErrorOccurrence(
            timestamp=self._clock(),
            code=code,
            message=str(error),
            recoverable=recoverable,
            context=ctx,
        )
        with self._error_lock:
            self._error_counts[code] += 1
            self._errors.append(occurrence)
            count = self._error_counts[code]
        logger.debug("Error %s reported (occurrence %d)", code, count)

    def record_cache_lookup(self, hit: bool) -> None:
        with self._cache_lock:
            self._cache_lookups += 1
            if hit:
                self._cache_hits += 1

    # -------------------------------------------------------------------------
    # Projections
    # -------------------------------------------------------------------------

    def error_counts(self) -> dict[str, int]:
        with self._error_lock:
            return dict(self._error_counts)

    def recent_errors(self, limit: int = 20) -> list[ErrorOccurrence]:
        with self._error_lock:
            return list(self._errors)[-limit:]

    def cache_hit_rate(self) -> float:
        with self._cache_lock:
            if self._cache_lookups == 0:
                return 0.0
            return self._cache_hits / self._cache_lookups

    def get_real_time_stats(self) -> RealTimeStats:
        """Stats over the real-time window only."""
        since = self._clock() - self.realtime_window_seconds
        records = self.processing.snapshot(since=since)
        successful = sum(1 for r in records if r.success)
        latest_system = self.system.latest()

        return RealTimeStats(
            window_seconds=self.realtime_window_seconds,
            sample_size=len(records),
            successful=successful,
            failed=len(records) - successful,
            # An idle window reports 1.0; check sample_size before alerting
            success_rate=successful / len(records) if records else 1.0,
            average_processing_time_ms=_mean(r.duration_ms for r in records),
            average_confidence=_mean(r.confidence for r in records),
            throughput_per_hour=len(records) * 3600.0 / self.realtime_window_seconds,
            current_memory_mb=latest_system.memory_mb if latest_system else None,
            current_cpu_percent=latest_system.cpu_percent if latest_system else None,
            queue_length=latest_system.queue_length if latest_system else None,
            cache_hit_rate=latest_system.cache_hit_rate if latest_system else None,
        )

    def get_analytics_summary(self, hours_back: float = 24.0) -> AnalyticsSummary:
        """Summary over the last ``hours_back`` hours."""
        now = self._clock()
        window = hours_back * 3600.0
        start = now - window
        midpoint = now - window / 2

        processing = self.processing.snapshot(since=start)
        quality = self.quality.snapshot(since=start)
        system = self.system.snapshot(since=start)

        successful = sum(1 for r in processing if r.success)
        total = len(processing)

        breakdown: dict[str, StrategyStats] = {}
        for strategy in sorted({r.strategy for r in processing}):
            subset = [r for r in processing if r.strategy == strategy]
            breakdown[strategy] = StrategyStats(
                count=len(subset),
                success_rate=sum(1 for r in subset if r.success) / len(subset),
                average_processing_time_ms=_mean(r.duration_ms for r in subset),
                average_confidence=_mean(r.confidence for r in subset),
            )

        hourly: Counter[str] = Counter()
        for r in processing:
            hour = datetime.fromtimestamp(r.timestamp, tz=timezone.utc).strftime(
                "%Y-%m-%dT%H:00Z"
            )
            hourly[hour] += 1

        early_proc = [r for r in processing if r.timestamp < midpoint]
        late_proc = [r for r in processing if r.timestamp >= midpoint]
        early_quality = [r for r in quality if r.timestamp < midpoint]
        late_quality = [r for r in quality if r.timestamp >= midpoint]

        if early_proc and late_proc:
            time_trend = classify_trend(
                _mean(r.duration_ms for r in early_proc),
                _mean(r.duration_ms for r in late_proc),
                band=0.1,
                lower_is_better=True,
            )
        else:
            time_trend = Trend.STABLE

        if early_quality and late_quality:
            quality_trend = classify_trend(
                _mean(r.data_quality_score for r in early_quality),
                _mean(r.data_quality_score for r in late_quality),
                band=0.05,
            )
        else:
            quality_trend = Trend.STABLE

        return AnalyticsSummary(
            hours_back=hours_back,
            generated_at=datetime.fromtimestamp(now, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            total_documents=total,
            successful=successful,
            failed=total - successful,
            success_rate=successful / total if total else 0.0,
            average_processing_time_ms=_mean(r.duration_ms for r in processing),
            average_confidence=_mean(r.confidence for r in processing),
            throughput_per_hour=total / hours_back if hours_back > 0 else 0.0,
            total_tax_amount=round(
                sum(r.tax_amount for r in processing if r.success and r.tax_amount), 2
            ),
            strategy_breakdown=breakdown,
            hourly_throughput=sorted(hourly.items()),
            average_quality_score=_mean(r.data_quality_score for r in quality),
            vat_compliance_rate=(
                sum(1 for r in quality if r.vat_compliant) / len(quality) if quality else 0.0
            ),
            validation_issue_count=sum(len(r.validation_issues) for r in quality),
            average_cpu_percent=_mean(r.cpu_percent for r in system),
            average_memory_mb=_mean(r.memory_mb for r in system),
            peak_memory_mb=max((r.memory_mb for r in system), default=0.0),
            processing_time_trend=time_trend,
            quality_trend=quality_trend,
            throughput_trend=classify_throughput(len(early_proc), len(late_proc)),
            error_counts=self.error_counts(),
        )

    def export_metrics(self, fmt: str = "json", hours_back: float = 24.0) -> str:
        """
        Export raw records and the summary.

        JSON contains all three logs plus the summary; CSV contains the
        processing log only.
        """
        since = self._clock() - hours_back * 3600.0
        processing = self.processing.snapshot(since=since)

        if fmt == "json":
            return json.dumps(
                {
                    "summary": self.get_analytics_summary(hours_back).to_dict(),
                    "processing": [r.to_dict() for r in processing],
                    "system": [r.to_dict() for r in self.system.snapshot(since=since)],
                    "quality": [r.to_dict() for r in self.quality.snapshot(since=since)],
                    "errors": [e.to_dict() for e in self.recent_errors(limit=100)],
                },
                indent=2,
                default=str,
            )

        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            columns = [
                "timestamp",
                "file_name",
                "strategy",
                "duration_ms",
                "success",
                "confidence",
                "error_code",
                "tax_amount",
            ]
            writer.writerow(columns)
            for r in processing:
                row = r.to_dict()
                writer.writerow(["" if row[c] is None else row[c] for c in columns])
            return buffer.getvalue()

        raise ValueError(f"Unsupported export format: {fmt}")

    def cleanup(self) -> int:
        """Evict expired records from every log. Returns the number evicted."""
        removed = self.processing.cleanup() + self.system.cleanup() + self.quality.cleanup()
        if removed:
            logger.info("Metrics cleanup evicted %d records", removed)
        return removed

    def _realtime_throughput(self) -> float:
        since = self._clock() - self.realtime_window_seconds
        count = len(self.processing.snapshot(since=since))
        return count * 3600.0 / self.realtime_window_seconds
