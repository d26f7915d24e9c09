"""
System resource sampling.

The collector only depends on the SystemSampler protocol; the psutil-backed
implementation reads real CPU, memory and thread counts from the OS. Queue
length and cache hit rate are owned by the pipeline and plugged in as
providers.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemSnapshot:
    """Raw resource reading."""

    cpu_percent: float
    memory_mb: float
    active_threads: int
    queue_length: int = 0
    cache_hit_rate: float = 0.0


class SystemSampler(Protocol):
    """Anything that can produce a SystemSnapshot."""

    def sample(self) -> SystemSnapshot: ...


class PsutilSystemSampler:
    """Samples the current process via psutil."""

    def __init__(
        self,
        queue_length: Callable[[], int] | None = None,
        cache_hit_rate: Callable[[], float] | None = None,
    ):
        self._process = psutil.Process()
        self._queue_length = queue_length
        self._cache_hit_rate = cache_hit_rate
        # Prime cpu_percent so the first real sample is meaningful
        self._process.cpu_percent(interval=None)

    def set_providers(
        self,
        queue_length: Callable[[], int] | None = None,
        cache_hit_rate: Callable[[], float] | None = None,
    ) -> None:
        if queue_length is not None:
            self._queue_length = queue_length
        if cache_hit_rate is not None:
            self._cache_hit_rate = cache_hit_rate

    def sample(self) -> SystemSnapshot:
        with self._process.oneshot():
            cpu = self._process.cpu_percent(interval=None)
            rss_mb = self._process.memory_info().rss / (1024 * 1024)

        return SystemSnapshot(
            cpu_percent=cpu,
            memory_mb=rss_mb,
            active_threads=threading.active_count(),
            queue_length=self._queue_length() if self._queue_length else 0,
            cache_hit_rate=self._cache_hit_rate() if self._cache_hit_rate else 0.0,
        )
