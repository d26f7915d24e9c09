"""
Metrics collection and alerting.

Provides:
- MetricsCollector: bounded processing/system/quality logs with projections
- AlertSystem: threshold checks published to explicit subscribers
- PeriodicJob / MonitoringDashboard: stoppable background schedules
- PsutilSystemSampler: real process resource sampling
"""

from .alerts import Alert, AlertSeverity, AlertSystem, AlertType
from .collector import (
    AnalyticsSummary,
    MetricLog,
    MetricsCollector,
    RealTimeStats,
    StrategyStats,
    ThroughputTrend,
    Trend,
)
from .dashboard import MonitoringDashboard
from .records import ErrorOccurrence, ProcessingRecord, QualityRecord, SystemRecord
from .sampler import PsutilSystemSampler, SystemSampler, SystemSnapshot
from .scheduler import PeriodicJob

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertSystem",
    "AlertType",
    "AnalyticsSummary",
    "MetricLog",
    "MetricsCollector",
    "RealTimeStats",
    "StrategyStats",
    "ThroughputTrend",
    "Trend",
    "MonitoringDashboard",
    "ErrorOccurrence",
    "ProcessingRecord",
    "QualityRecord",
    "SystemRecord",
    "PsutilSystemSampler",
    "SystemSampler",
    "SystemSnapshot",
    "PeriodicJob",
]
