"""
Threshold alerting with explicit publish/subscribe.

Subscribers are plain callbacks keyed by alert type and are invoked
synchronously by ``check_metrics``. Every breach is published once per check;
repeated breaches in later checks alert again.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .collector import RealTimeStats

if TYPE_CHECKING:
    from ..config import AlertThresholds

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Named alert events."""

    HIGH_PROCESSING_TIME = "HIGH_PROCESSING_TIME"
    LOW_SUCCESS_RATE = "LOW_SUCCESS_RATE"
    HIGH_MEMORY_USAGE = "HIGH_MEMORY_USAGE"
    LARGE_QUEUE = "LARGE_QUEUE"


class AlertSeverity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class Alert:
    """One published alert."""

    alert_type: AlertType
    message: str
    value: float
    threshold: float
    severity: AlertSeverity
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["alert_type"] = self.alert_type.value
        data["severity"] = self.severity.value
        return data


AlertCallback = Callable[[Alert], None]


class AlertSystem:
    """Evaluates thresholds and publishes alerts to subscribers."""

    def __init__(
        self,
        thresholds: "AlertThresholds | None" = None,
        clock: Callable[[], float] = time.time,
        history_size: int = 100,
    ):
        if thresholds is None:
            from ..config import AlertThresholds

            thresholds = AlertThresholds()
        self.thresholds = thresholds
        self._clock = clock
        self._subscribers: dict[AlertType, list[AlertCallback]] = {t: [] for t in AlertType}
        self._lock = threading.Lock()
        self._history: deque[Alert] = deque(maxlen=history_size)

    def subscribe(self, alert_type: AlertType, callback: AlertCallback) -> None:
        with self._lock:
            self._subscribers[alert_type].append(callback)

    def unsubscribe(self, alert_type: AlertType, callback: AlertCallback) -> bool:
        with self._lock:
            try:
                self._subscribers[alert_type].remove(callback)
                return True
            except ValueError:
                return False

    def trigger(self, alert: Alert) -> int:
        """
        Publish an alert to its subscribers.

        A failing subscriber is logged and does not prevent delivery to the
        others. Returns the number of successful deliveries.
        """
        with self._lock:
            callbacks = list(self._subscribers[alert.alert_type])
            self._history.append(alert)

        logger.warning("ALERT %s: %s", alert.alert_type.value, alert.message)

        delivered = 0
        for callback in callbacks:
            try:
                callback(alert)
                delivered += 1
            except Exception:
                logger.exception("Alert subscriber failed for %s", alert.alert_type.value)
        return delivered

    def check_metrics(self, stats: RealTimeStats) -> list[Alert]:
        """Evaluate all thresholds against a real-time window and publish breaches."""
        t = self.thresholds
        now = self._clock()
        alerts: list[Alert] = []

        if stats.sample_size > 0:
            if stats.average_processing_time_ms > t.max_avg_processing_ms:
                alerts.append(
                    Alert(
                        alert_type=AlertType.HIGH_PROCESSING_TIME,
                        message=(
                            f"Average processing time {stats.average_processing_time_ms:.0f}ms "
                            f"exceeds {t.max_avg_processing_ms:.0f}ms"
                        ),
                        value=stats.average_processing_time_ms,
                        threshold=t.max_avg_processing_ms,
                        severity=AlertSeverity.WARNING,
                        timestamp=now,
                    )
                )
            if stats.success_rate < t.min_success_rate:
                alerts.append(
                    Alert(
                        alert_type=AlertType.LOW_SUCCESS_RATE,
                        message=(
                            f"Success rate {stats.success_rate:.0%} below "
                            f"{t.min_success_rate:.0%}"
                        ),
                        value=stats.success_rate,
                        threshold=t.min_success_rate,
                        severity=AlertSeverity.CRITICAL,
                        timestamp=now,
                    )
                )

        if stats.current_memory_mb is not None and stats.current_memory_mb > t.max_memory_mb:
            alerts.append(
                Alert(
                    alert_type=AlertType.HIGH_MEMORY_USAGE,
                    message=(
                        f"Memory usage {stats.current_memory_mb:.0f}MB exceeds "
                        f"{t.max_memory_mb:.0f}MB"
                    ),
                    value=stats.current_memory_mb,
                    threshold=t.max_memory_mb,
                    severity=AlertSeverity.WARNING,
                    timestamp=now,
                )
            )

        if stats.queue_length is not None and stats.queue_length > t.max_queue_length:
            alerts.append(
                Alert(
                    alert_type=AlertType.LARGE_QUEUE,
                    message=f"Queue length {stats.queue_length} exceeds {t.max_queue_length}",
                    value=float(stats.queue_length),
                    threshold=float(t.max_queue_length),
                    severity=AlertSeverity.WARNING,
                    timestamp=now,
                )
            )

        for alert in alerts:
            self.trigger(alert)
        return alerts

    def recent_alerts(self, limit: int = 20) -> list[Alert]:
        with self._lock:
            return list(self._history)[-limit:]
