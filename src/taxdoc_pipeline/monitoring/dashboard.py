"""
Monitoring dashboard lifecycle.

Owns the three periodic jobs (system sampling, cleanup, status report with
alert evaluation). Nothing runs until ``start()``; ``stop()`` tears every job
down.
"""

import logging
from typing import TYPE_CHECKING, Any

from .alerts import AlertSystem
from .collector import MetricsCollector
from .scheduler import PeriodicJob

if TYPE_CHECKING:
    from ..config import MonitoringConfig

logger = logging.getLogger(__name__)


class MonitoringDashboard:
    """Periodic sampling, cleanup and alerting around a collector."""

    def __init__(
        self,
        collector: MetricsCollector,
        alerts: AlertSystem,
        config: "MonitoringConfig | None" = None,
    ):
        if config is None:
            from ..config import MonitoringConfig

            config = MonitoringConfig()
        self.collector = collector
        self.alerts = alerts
        self.config = config

        self.jobs = [
            PeriodicJob("system-sampling", config.sample_interval_seconds, self.sample_system),
            PeriodicJob("metrics-cleanup", config.cleanup_interval_seconds, self.collector.cleanup),
            PeriodicJob("status-report", config.report_interval_seconds, self.report_status),
        ]

    @property
    def is_running(self) -> bool:
        return any(job.is_running for job in self.jobs)

    def start(self) -> None:
        for job in self.jobs:
            job.start()
        logger.info("Monitoring dashboard started")

    def stop(self) -> None:
        for job in self.jobs:
            job.stop()
        logger.info("Monitoring dashboard stopped")

    def sample_system(self) -> None:
        self.collector.record_system()

    def report_status(self) -> None:
        """Log the real-time window and evaluate alert thresholds."""
        stats = self.collector.get_real_time_stats()
        logger.info(
            "Status: %d docs in last %.0fs, success %.0f%%, avg %.0fms, memory %s",
            stats.sample_size,
            stats.window_seconds,
            stats.success_rate * 100,
            stats.average_processing_time_ms,
            f"{stats.current_memory_mb:.0f}MB" if stats.current_memory_mb is not None else "n/a",
        )
        self.alerts.check_metrics(stats)

    def get_dashboard_data(self, hours_back: float = 24.0) -> dict[str, Any]:
        return {
            "real_time": self.collector.get_real_time_stats().to_dict(),
            "summary": self.collector.get_analytics_summary(hours_back).to_dict(),
            "recent_alerts": [a.to_dict() for a in self.alerts.recent_alerts()],
            "error_counts": self.collector.error_counts(),
            "jobs": [job.status() for job in self.jobs],
        }
