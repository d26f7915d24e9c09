"""
Graceful degradation registry.

Maps a logical service name to a fallback function. The registry never
invokes a fallback on its own; callers decide when the resilient path is
exhausted and ask for the fallback explicitly.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from .errors import NoFallbackAvailableError

logger = logging.getLogger(__name__)


class DegradationRegistry:
    """Thread-safe service -> fallback mapping."""

    def __init__(self) -> None:
        self._fallbacks: dict[str, Callable[..., Any]] = {}
        self._lock = threading.Lock()

    def register(self, service: str, fallback: Callable[..., Any]) -> None:
        """Register (or replace) the fallback for a service."""
        with self._lock:
            if service in self._fallbacks:
                logger.debug("Replacing fallback for %s", service)
            self._fallbacks[service] = fallback

    def unregister(self, service: str) -> None:
        with self._lock:
            self._fallbacks.pop(service, None)

    def has(self, service: str) -> bool:
        with self._lock:
            return service in self._fallbacks

    def services(self) -> list[str]:
        with self._lock:
            return sorted(self._fallbacks)

    def execute_fallback(self, service: str, *args: Any, **kwargs: Any) -> Any:
        """
        Run the registered fallback for a service.

        Raises:
            NoFallbackAvailableError: Nothing registered for the service
        """
        with self._lock:
            fallback = self._fallbacks.get(service)

        if fallback is None:
            raise NoFallbackAvailableError(service)

        logger.info("Using fallback for %s", service)
        return fallback(*args, **kwargs)
