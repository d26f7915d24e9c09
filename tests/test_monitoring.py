"""Tests for metrics collection, alerting and periodic jobs."""

import csv
import io
import json
import threading

import pytest

from taxdoc_pipeline.config import AlertThresholds, MonitoringConfig
from taxdoc_pipeline.monitoring import (
    Alert,
    AlertSeverity,
    AlertSystem,
    AlertType,
    MetricLog,
    MetricsCollector,
    MonitoringDashboard,
    PeriodicJob,
    ProcessingRecord,
    RealTimeStats,
    SystemSnapshot,
    ThroughputTrend,
    Trend,
)
from taxdoc_pipeline.monitoring.collector import classify_throughput, classify_trend
from taxdoc_pipeline.resilience import CircuitBreaker, CircuitState, VisionServiceError


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticSampler:
    """Sampler returning a fixed snapshot."""

    def __init__(self, memory_mb: float = 120.0, queue_length: int = 0):
        self.snapshot = SystemSnapshot(
            cpu_percent=12.5,
            memory_mb=memory_mb,
            active_threads=4,
            queue_length=queue_length,
            cache_hit_rate=0.5,
        )

    def sample(self) -> SystemSnapshot:
        return self.snapshot


def record(timestamp: float, name: str = "doc.pdf") -> ProcessingRecord:
    return ProcessingRecord(
        timestamp=timestamp, file_name=name, strategy="FALLBACK", duration_ms=10.0, success=True
    )


def make_stats(**overrides) -> RealTimeStats:
    values = dict(
        window_seconds=300.0,
        sample_size=10,
        successful=10,
        failed=0,
        success_rate=1.0,
        average_processing_time_ms=500.0,
        average_confidence=0.9,
        throughput_per_hour=120.0,
        current_memory_mb=100.0,
        current_cpu_percent=5.0,
        queue_length=0,
        cache_hit_rate=0.0,
    )
    values.update(overrides)
    return RealTimeStats(**values)


class TestMetricLog:
    """Tests for age and count bounded logs."""

    def test_count_cap_evicts_oldest(self):
        clock = FakeClock()
        log = MetricLog("processing", max_age_seconds=3600, max_records=3, clock=clock)
        for i in range(5):
            log.append(record(clock.now, f"doc{i}.pdf"))

        names = [r.file_name for r in log.snapshot()]
        assert names == ["doc2.pdf", "doc3.pdf", "doc4.pdf"]
        assert log.evicted == 2

    def test_age_cap_evicts_expired(self):
        clock = FakeClock()
        log = MetricLog("processing", max_age_seconds=60, max_records=100, clock=clock)
        log.append(record(clock.now, "old.pdf"))
        clock.advance(120)
        log.append(record(clock.now, "new.pdf"))

        assert [r.file_name for r in log.snapshot()] == ["new.pdf"]

    def test_snapshot_hides_expired_before_cleanup(self):
        clock = FakeClock()
        log = MetricLog("processing", max_age_seconds=60, max_records=100, clock=clock)
        log.append(record(clock.now))
        clock.advance(61)

        assert log.snapshot() == []
        assert len(log) == 1
        assert log.cleanup() == 1
        assert len(log) == 0

    def test_snapshot_since(self):
        clock = FakeClock()
        log = MetricLog("processing", max_age_seconds=3600, max_records=100, clock=clock)
        log.append(record(clock.now - 30, "a.pdf"))
        log.append(record(clock.now, "b.pdf"))

        assert [r.file_name for r in log.snapshot(since=clock.now - 10)] == ["b.pdf"]

    def test_concurrent_appends_respect_cap(self):
        clock = FakeClock()
        log = MetricLog("processing", max_age_seconds=3600, max_records=50, clock=clock)

        def writer():
            for _ in range(100):
                log.append(record(clock.now))

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 50
        assert log.evicted == 350


class TestMetricsCollector:
    """Tests for recording and projections."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self, clock):
        return MetricsCollector(
            max_age_seconds=24 * 3600,
            max_records=1000,
            realtime_window_seconds=300,
            sampler=StaticSampler(),
            clock=clock,
        )

    def test_real_time_stats(self, metrics):
        metrics.record_processing("a.pdf", "TEMPLATE_MATCH", 100.0, True, confidence=0.9)
        metrics.record_processing("b.pdf", "AI_VISION", 300.0, True, confidence=0.7)
        metrics.record_processing("c.pdf", "FALLBACK", 200.0, False, error_code="EXTRACTION_FAILED")
        metrics.record_system()

        stats = metrics.get_real_time_stats()

        assert stats.sample_size == 3
        assert stats.successful == 2
        assert stats.failed == 1
        assert stats.success_rate == pytest.approx(2 / 3)
        assert stats.average_processing_time_ms == pytest.approx(200.0)
        assert stats.throughput_per_hour == pytest.approx(36.0)
        assert stats.current_memory_mb == 120.0
        assert stats.cache_hit_rate == 0.5

    def test_real_time_window_excludes_older_records(self, metrics, clock):
        metrics.record_processing("old.pdf", "FALLBACK", 100.0, False)
        clock.advance(600)
        metrics.record_processing("new.pdf", "FALLBACK", 100.0, True)

        stats = metrics.get_real_time_stats()
        assert stats.sample_size == 1
        assert stats.success_rate == 1.0

    def test_idle_window_reports_full_success(self, metrics):
        stats = metrics.get_real_time_stats()
        assert stats.sample_size == 0
        assert stats.success_rate == 1.0
        assert stats.current_memory_mb is None

    def test_record_system_without_sampler_is_noop(self, clock):
        metrics = MetricsCollector(clock=clock)
        assert metrics.record_system() is None
        assert len(metrics.system) == 0

    def test_summary_breakdown_and_tax_total(self, metrics):
        metrics.record_processing("a.pdf", "TEMPLATE_MATCH", 100.0, True, 0.9, tax_amount=207.0)
        metrics.record_processing("b.pdf", "TEMPLATE_MATCH", 300.0, True, 0.8, tax_amount=138.0)
        metrics.record_processing("c.pdf", "AI_VISION", 900.0, False, 0.0, tax_amount=50.0)
        metrics.record_quality("h1", 0.9, 0.9, "TEMPLATE_MATCH", vat_compliant=True)
        metrics.record_quality(
            "h2", 0.5, 0.6, "AI_VISION", validation_issues=["Missing VAT"], vat_compliant=False
        )

        summary = metrics.get_analytics_summary(hours_back=24)

        assert summary.total_documents == 3
        assert summary.successful == 2
        assert summary.total_tax_amount == pytest.approx(345.0)
        assert summary.strategy_breakdown["TEMPLATE_MATCH"].count == 2
        assert summary.strategy_breakdown["TEMPLATE_MATCH"].average_processing_time_ms == 200.0
        assert summary.strategy_breakdown["AI_VISION"].success_rate == 0.0
        assert summary.vat_compliance_rate == 0.5
        assert summary.validation_issue_count == 1
        assert sum(count for _, count in summary.hourly_throughput) == 3

    def test_summary_trends(self, metrics, clock):
        """Late half slower, lower quality and busier than early half."""
        metrics.record_processing("a.pdf", "FALLBACK", 100.0, True)
        metrics.record_quality("h1", 0.9, 0.9, "FALLBACK")
        clock.advance(2400)
        for name in ("b.pdf", "c.pdf", "d.pdf"):
            metrics.record_processing(name, "FALLBACK", 400.0, True)
        metrics.record_quality("h2", 0.5, 0.5, "FALLBACK")

        summary = metrics.get_analytics_summary(hours_back=1)

        assert summary.processing_time_trend == Trend.DECLINING
        assert summary.quality_trend == Trend.DECLINING
        assert summary.throughput_trend == ThroughputTrend.INCREASING

    def test_summary_with_one_empty_half_is_stable(self, metrics):
        metrics.record_processing("a.pdf", "FALLBACK", 100.0, True)
        summary = metrics.get_analytics_summary(hours_back=1)

        assert summary.processing_time_trend == Trend.STABLE
        assert summary.quality_trend == Trend.STABLE

    def test_error_counts_by_code(self, metrics):
        metrics.record_error(VisionServiceError("down"), {"service": "vision"})
        metrics.record_error(VisionServiceError("down again"))
        metrics.record_error(RuntimeError("unexpected"))

        assert metrics.error_counts() == {"VISION_SERVICE_ERROR": 2, "INTERNAL_ERROR": 1}
        latest = metrics.recent_errors(limit=1)[0]
        assert latest.code == "INTERNAL_ERROR"
        assert metrics.get_analytics_summary().error_counts["VISION_SERVICE_ERROR"] == 2

    def test_cache_hit_rate(self, metrics):
        assert metrics.cache_hit_rate() == 0.0
        metrics.record_cache_lookup(True)
        metrics.record_cache_lookup(False)
        metrics.record_cache_lookup(True)
        metrics.record_cache_lookup(True)
        assert metrics.cache_hit_rate() == 0.75

    def test_export_json(self, metrics):
        metrics.record_processing("a.pdf", "FALLBACK", 100.0, True)
        metrics.record_system()

        data = json.loads(metrics.export_metrics("json"))

        assert data["summary"]["total_documents"] == 1
        assert data["processing"][0]["file_name"] == "a.pdf"
        assert len(data["system"]) == 1
        assert data["summary"]["throughput_trend"] in {t.value for t in ThroughputTrend}

    def test_export_csv(self, metrics):
        metrics.record_processing("a.pdf", "FALLBACK", 100.0, True, tax_amount=12.5)
        metrics.record_processing("b.pdf", "AI_VISION", 50.0, False, error_code="X")

        rows = list(csv.reader(io.StringIO(metrics.export_metrics("csv"))))

        assert rows[0][:3] == ["timestamp", "file_name", "strategy"]
        assert [r[1] for r in rows[1:]] == ["a.pdf", "b.pdf"]
        assert rows[2][6] == "X"

    def test_export_rejects_unknown_format(self, metrics):
        with pytest.raises(ValueError):
            metrics.export_metrics("xml")


class TestTrendClassification:
    def test_latency_lower_is_better(self):
        assert classify_trend(100, 80, 0.1, lower_is_better=True) == Trend.IMPROVING
        assert classify_trend(100, 120, 0.1, lower_is_better=True) == Trend.DECLINING
        assert classify_trend(100, 105, 0.1, lower_is_better=True) == Trend.STABLE

    def test_quality_higher_is_better(self):
        assert classify_trend(0.8, 0.9, 0.05) == Trend.IMPROVING
        assert classify_trend(0.8, 0.7, 0.05) == Trend.DECLINING

    def test_throughput(self):
        assert classify_throughput(0, 0) == ThroughputTrend.STABLE
        assert classify_throughput(10, 5) == ThroughputTrend.DECREASING
        assert classify_throughput(10, 10) == ThroughputTrend.STABLE


class TestAlertSystem:
    """Tests for threshold checks and publishing."""

    def test_no_alerts_for_healthy_stats(self):
        alerts = AlertSystem(AlertThresholds())
        assert alerts.check_metrics(make_stats()) == []

    def test_each_threshold_breach(self):
        alerts = AlertSystem(AlertThresholds())
        stats = make_stats(
            average_processing_time_ms=12_000.0,
            success_rate=0.5,
            current_memory_mb=450.0,
            queue_length=51,
        )

        types = {a.alert_type for a in alerts.check_metrics(stats)}

        assert types == set(AlertType)

    def test_idle_window_does_not_alert_on_success_rate(self):
        alerts = AlertSystem(AlertThresholds())
        stats = make_stats(sample_size=0, success_rate=0.0, average_processing_time_ms=50_000.0)
        assert alerts.check_metrics(stats) == []

    def test_subscribers_receive_alerts(self):
        alerts = AlertSystem(AlertThresholds())
        received = []
        alerts.subscribe(AlertType.LOW_SUCCESS_RATE, received.append)

        alerts.check_metrics(make_stats(success_rate=0.4))

        assert len(received) == 1
        assert received[0].severity == AlertSeverity.CRITICAL
        assert received[0].threshold == 0.9

    def test_failing_subscriber_does_not_block_others(self):
        alerts = AlertSystem(AlertThresholds())
        received = []

        def broken(alert: Alert) -> None:
            raise RuntimeError("subscriber crashed")

        alerts.subscribe(AlertType.LARGE_QUEUE, broken)
        alerts.subscribe(AlertType.LARGE_QUEUE, received.append)

        published = alerts.check_metrics(make_stats(queue_length=100))

        assert len(published) == 1
        assert len(received) == 1
        assert alerts.recent_alerts()[-1].alert_type == AlertType.LARGE_QUEUE

    def test_unsubscribe(self):
        alerts = AlertSystem(AlertThresholds())
        received = []
        alerts.subscribe(AlertType.HIGH_MEMORY_USAGE, received.append)
        assert alerts.unsubscribe(AlertType.HIGH_MEMORY_USAGE, received.append)
        assert not alerts.unsubscribe(AlertType.HIGH_MEMORY_USAGE, received.append)

        alerts.check_metrics(make_stats(current_memory_mb=900.0))
        assert received == []

    def test_repeated_breach_alerts_again(self):
        alerts = AlertSystem(AlertThresholds())
        stats = make_stats(current_memory_mb=900.0)
        alerts.check_metrics(stats)
        alerts.check_metrics(stats)
        assert len(alerts.recent_alerts()) == 2


class TestPeriodicJob:
    """Tests for background jobs."""

    def test_run_once_counts_runs_and_failures(self):
        outcomes = iter([None, RuntimeError("boom")])

        def fn():
            outcome = next(outcomes)
            if outcome is not None:
                raise outcome

        job = PeriodicJob("test", 60, fn)
        assert job.run_once() is True
        assert job.run_once() is False
        assert job.runs == 1
        assert job.failures == 1

    def test_failing_job_is_suspended_by_breaker(self):
        calls = []

        def fn():
            calls.append(1)
            raise RuntimeError("boom")

        breaker = CircuitBreaker("job:test", failure_threshold=2, call_timeout=None)
        job = PeriodicJob("test", 60, fn, breaker=breaker)
        for _ in range(4):
            job.run_once()

        assert len(calls) == 2
        assert breaker.state == CircuitState.OPEN
        assert job.status()["breaker"]["state"] == "OPEN"

    def test_start_and_stop(self):
        ran = threading.Event()
        job = PeriodicJob("tick", 0.01, ran.set)
        job.start()
        try:
            assert ran.wait(2.0)
            assert job.is_running
        finally:
            job.stop()
        assert not job.is_running

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicJob("bad", 0, lambda: None)


class TestMonitoringDashboard:
    """Tests for the dashboard lifecycle."""

    @pytest.fixture
    def dashboard(self):
        metrics = MetricsCollector(sampler=StaticSampler(memory_mb=450.0))
        return MonitoringDashboard(metrics, AlertSystem(AlertThresholds()), MonitoringConfig())

    def test_owns_three_jobs(self, dashboard):
        assert [job.name for job in dashboard.jobs] == [
            "system-sampling",
            "metrics-cleanup",
            "status-report",
        ]
        assert not dashboard.is_running

    def test_start_stop(self, dashboard):
        dashboard.start()
        try:
            assert dashboard.is_running
        finally:
            dashboard.stop()
        assert not dashboard.is_running

    def test_report_status_evaluates_alerts(self, dashboard):
        dashboard.sample_system()
        dashboard.report_status()

        assert [a.alert_type for a in dashboard.alerts.recent_alerts()] == [
            AlertType.HIGH_MEMORY_USAGE
        ]

    def test_dashboard_data(self, dashboard):
        dashboard.collector.record_processing("a.pdf", "FALLBACK", 10.0, True)
        data = dashboard.get_dashboard_data()

        assert data["real_time"]["sample_size"] == 1
        assert data["summary"]["total_documents"] == 1
        assert len(data["jobs"]) == 3
