"""
Health check registry.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Health of one service."""

    service: str
    healthy: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"service": self.service, "healthy": self.healthy}
        if self.error:
            data["error"] = self.error
        return data


class HealthRegistry:
    """
    Named health checks.

    A check returns truthy when healthy. A check that raises is reported
    unhealthy with the exception message.
    """

    def __init__(self) -> None:
        self._checks: dict[str, Callable[[], bool]] = {}
        self._lock = threading.Lock()

    def register_check(self, service: str, check: Callable[[], bool]) -> None:
        with self._lock:
            self._checks[service] = check

    def check_health(self) -> list[HealthStatus]:
        with self._lock:
            checks = list(self._checks.items())

        results: list[HealthStatus] = []
        for service, check in checks:
            try:
                healthy = bool(check())
                results.append(HealthStatus(service=service, healthy=healthy))
            except Exception as e:
                logger.warning("Health check for %s failed: %s", service, e)
                results.append(HealthStatus(service=service, healthy=False, error=str(e)))
        return results
