"""
Memory governor for long-running exports.

Samples resident memory and, when it crosses the configured budget, runs a
single cleanup at a time while crawler workers wait for it to finish.
"""

import asyncio
import gc
from typing import Callable, Optional

import psutil
from discord.ext import tasks
from loguru import logger

from .config import Config
from .models import MemorySnapshot


def _process_rss() -> int:
    return psutil.Process().memory_info().rss


class MemoryGovernor:
    """
    Detects memory pressure and throttles ingestion while reclaiming memory.

    Only one cleanup runs at a time; callers that find a cleanup in flight
    return immediately. Crawler workers call wait_until_clear() before each
    fetch, which blocks them for the duration of a cleanup.
    """

    def __init__(
        self,
        config: Config,
        sampler: Optional[Callable[[], int]] = None,
        collector: Callable[[], int] = gc.collect,
        gc_pause: float = 0.1
    ) -> None:
        self.config = config
        self.sampler = sampler or _process_rss
        self.collector = collector
        self.gc_pause = gc_pause
        self.limit_bytes = config.memory_limit_bytes
        self.cleanup_in_progress = False
        self.cleanups_run = 0
        self._clear = asyncio.Event()
        self._clear.set()
        self._loop = tasks.loop(seconds=config.memory_check_interval)(self._scheduled_check)

    def sample(self) -> MemorySnapshot:
        return MemorySnapshot(rss_bytes=self.sampler(), limit_bytes=self.limit_bytes)

    async def wait_until_clear(self) -> None:
        """Block while a cleanup is running."""
        await self._clear.wait()

    async def check_and_handle(self, trigger: str = "TIMER") -> bool:
        """
        Sample memory and clean up if it is over the limit.

        Args:
            trigger: Label for the caller, used in logs

        Returns:
            True if this call ran a cleanup
        """
        if self.cleanup_in_progress:
            return False

        snapshot = self.sample()
        if not snapshot.over_limit:
            return False

        self.cleanup_in_progress = True
        self._clear.clear()
        try:
            logger.warning(
                f"Memory {snapshot.rss_mb:.1f} MB over limit "
                f"{self.limit_bytes / (1024 * 1024):.1f} MB ({trigger}); pausing ingestion to clean up"
            )
            await self._collect()

            after = self.sample()
            if after.over_limit:
                logger.warning(
                    f"Memory still {after.rss_mb:.1f} MB after cleanup; "
                    f"cooling down for {self.config.memory_cooldown_seconds}s"
                )
                await asyncio.sleep(self.config.memory_cooldown_seconds)
                self.collector()
                after = self.sample()

            logger.info(f"Memory cleanup finished at {after.rss_mb:.1f} MB")
            self.cleanups_run += 1
            return True
        finally:
            self.cleanup_in_progress = False
            self._clear.set()

    async def _collect(self) -> None:
        for _ in range(self.config.gc_passes):
            self.collector()
            await asyncio.sleep(self.gc_pause)

    async def _scheduled_check(self) -> None:
        try:
            await self.check_and_handle("TIMER")
        except Exception as e:
            logger.error(f"Memory check failed: {e}")

    def start(self) -> None:
        """Start timed checks."""
        if not self._loop.is_running():
            self._loop.start()

    def stop(self) -> None:
        if self._loop.is_running():
            self._loop.cancel()
