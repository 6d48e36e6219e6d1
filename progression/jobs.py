"""
Maintenance Job

Periodic background recomputation: evicts idle users whose state is already
saved, warms the performance metrics cache for every remaining user and fully
re-sorts the leaderboards. Runs as an asyncio task beside the API; the
blocking passes run in a worker thread and check a stop flag between users so
shutdown does not wait for a full pass.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from progression.common.config import MaintenanceConfig, get_config
from progression.common.logger import log_execution_time, with_context
from progression.service import ProgressionService

logger = with_context("jobs.maintenance", job="maintenance")


@dataclass
class MaintenanceReport:
    """What one maintenance cycle did."""
    users_evicted: int = 0
    users_warmed: int = 0
    users_skipped: int = 0
    leaderboards: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False


class MaintenanceJob:
    """
    Periodic idle eviction, metrics warm and leaderboard rebuild with
    cooperative cancellation.

    Example:
        job = MaintenanceJob(service)
        await job.start()
        ...
        await job.stop()
    """

    def __init__(self, service: ProgressionService, config: Optional[MaintenanceConfig] = None):
        self.service = service
        self.config = config or get_config().maintenance
        self._stop_requested = threading.Event()
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.last_report: Optional[MaintenanceReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the periodic loop; does nothing if already running."""
        if self.running:
            return
        self._stop_requested.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Maintenance job started (interval {self.config.interval_seconds}s)")

    async def stop(self) -> None:
        """Request cancellation and wait for the loop to finish."""
        self._stop_requested.set()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance job stopped")

    async def _loop(self) -> None:
        while not self._stop_requested.is_set():
            try:
                await self.run_once()
                await asyncio.sleep(self.config.interval_seconds)
            except asyncio.CancelledError:
                logger.info("Maintenance task cancelled")
                break
            except Exception as e:
                logger.error(f"Error in maintenance cycle: {e}", exc_info=True)
                await asyncio.sleep(self.config.interval_seconds)

    async def run_once(self) -> MaintenanceReport:
        """Run one cycle in a worker thread."""
        report = await asyncio.to_thread(self.run_cycle)
        self.cycles += 1
        self.last_report = report
        return report

    @log_execution_time(logger)
    def run_cycle(self) -> MaintenanceReport:
        """
        Blocking body of one cycle.

        Returns:
            The cycle report; ``cancelled`` is set when a stop request cut
            the warm pass short
        """
        report = MaintenanceReport()
        cycle_logger = logger.with_context(cycle=self.cycles + 1)

        if self.config.evict_idle_users:
            report.users_evicted = self.service.evict_idle()

        if self.config.warm_metrics:
            for user_id in self.service.known_users():
                if self._stop_requested.is_set():
                    report.cancelled = True
                    cycle_logger.info(f"Metrics warm pass cancelled after {report.users_warmed} users")
                    return report
                if self.service.aggregator.warm(user_id) is None:
                    report.users_skipped += 1
                else:
                    report.users_warmed += 1

        if self.config.rebuild_leaderboards and not self._stop_requested.is_set():
            report.leaderboards = self.service.leaderboard.rebuild()

        cycle_logger.debug(
            f"Maintenance cycle: {report.users_evicted} users evicted, "
            f"{report.users_warmed} users warmed, "
            f"{len(report.leaderboards)} leaderboards rebuilt"
        )
        return report

    def request_stop(self) -> None:
        """Ask a running cycle to stop at the next user boundary."""
        self._stop_requested.set()
