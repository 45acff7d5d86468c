"""
Process memory monitoring for migration runs.

MemoryMonitor samples the resident set size after each batch. Above the
configured ceiling it forces a garbage collection and logs a warning; it
never stops the run. The peak is reported in MigrationStatistics.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from collections.abc import Callable
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def process_rss_mb() -> float:
    """Resident set size of the current process in MiB."""
    return psutil.Process().memory_info().rss / BYTES_PER_MB


@dataclass(frozen=True)
class MemorySample:
    """
    Result of one memory check.

    Attributes:
        usage_mb: RSS when the check started.
        after_collect_mb: RSS after forced collection, when one ran.
        over_limit: Whether usage exceeded the ceiling.
    """

    usage_mb: float
    after_collect_mb: float | None = None
    over_limit: bool = False

    @property
    def freed_mb(self) -> float:
        if self.after_collect_mb is None:
            return 0.0
        return max(0.0, self.usage_mb - self.after_collect_mb)


class MemoryMonitor:
    """
    Samples process memory under a ceiling.

    Example:
        >>> monitor = MemoryMonitor(max_memory_mb=512)
        >>> sample = await monitor.check()
        >>> monitor.peak_mb >= sample.usage_mb
        True

    Thread-safety:
        Checks are serialized with ``asyncio.Semaphore(1)`` so concurrent
        collection workers never trigger overlapping garbage collections.
    """

    def __init__(
        self,
        max_memory_mb: float,
        *,
        sampler: Callable[[], float] = process_rss_mb,
    ) -> None:
        self.max_memory_mb = max_memory_mb
        self._sampler = sampler
        self._semaphore = asyncio.Semaphore(1)
        self._peak_mb = 0.0
        self.collections_forced = 0

    @property
    def peak_mb(self) -> float:
        return self._peak_mb

    def current_mb(self) -> float:
        usage = self._sampler()
        self._peak_mb = max(self._peak_mb, usage)
        return usage

    async def check(self) -> MemorySample:
        """Sample memory, collecting garbage when over the ceiling."""
        async with self._semaphore:
            usage = self.current_mb()
            if usage <= self.max_memory_mb:
                return MemorySample(usage)

            gc.collect()
            self.collections_forced += 1
            after = self._sampler()
            logger.warning(
                "Memory usage %.1f MB exceeds limit %.1f MB (%.1f MB after garbage collection)",
                usage,
                self.max_memory_mb,
                after,
            )
            return MemorySample(usage, after, over_limit=True)

    async def collect(self) -> MemorySample:
        """Force a garbage collection and report how much was freed."""
        async with self._semaphore:
            usage = self.current_mb()
            gc.collect()
            self.collections_forced += 1
            after = self._sampler()
        logger.info("Garbage collection freed %.1f MB", max(0.0, usage - after))
        return MemorySample(usage, after, over_limit=usage > self.max_memory_mb)


__all__ = ["MemoryMonitor", "MemorySample", "process_rss_mb"]
