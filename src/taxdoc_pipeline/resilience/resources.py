"""
Resource guard: process memory checks before large operations.
"""

import gc
import logging
from collections.abc import Callable

import psutil

from .errors import ResourceLimitExceededError

logger = logging.getLogger(__name__)


def process_rss_mb() -> float:
    """Resident set size of the current process in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class ResourceGuard:
    """
    Raises ResourceLimitExceededError when memory exceeds the threshold.

    A garbage collection pass is attempted first; the error is only raised
    if memory is still above the threshold afterwards.
    """

    def __init__(
        self,
        memory_threshold_mb: float = 500.0,
        sampler: Callable[[], float] = process_rss_mb,
    ):
        self.memory_threshold_mb = memory_threshold_mb
        self._sampler = sampler

    def memory_usage_mb(self) -> float:
        return self._sampler()

    def check(self, operation: str = "operation") -> None:
        """
        Check memory before a large operation.

        Raises:
            ResourceLimitExceededError: Memory stays above threshold after GC
        """
        usage = self.memory_usage_mb()
        if usage <= self.memory_threshold_mb:
            return

        logger.info(
            "Memory %.0fMB above %.0fMB before %s, collecting garbage",
            usage,
            self.memory_threshold_mb,
            operation,
        )
        gc.collect()

        usage = self.memory_usage_mb()
        if usage > self.memory_threshold_mb:
            logger.warning("Refusing %s: memory %.0fMB", operation, usage)
            raise ResourceLimitExceededError(usage, self.memory_threshold_mb)
