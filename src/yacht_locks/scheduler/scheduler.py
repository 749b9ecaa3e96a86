"""Scheduler for delayed status re-checks and periodic status sweeps."""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class StatusScheduler:
    """Schedules status reads after commands and, optionally, on an interval."""

    SWEEP_JOB_ID = "status_sweep"

    def __init__(
        self,
        on_recheck: Callable[[str], Awaitable[object]],
        on_sweep: Optional[Callable[[], Awaitable[object]]] = None,
        recheck_delay_seconds: float = 2.0,
        poll_interval_seconds: int = 0,
    ):
        """Initialize the scheduler.

        Args:
            on_recheck: Callback that refreshes one device. Args: (device_id)
            on_sweep: Callback that refreshes every site.
            recheck_delay_seconds: Delay between a command and its re-check.
            poll_interval_seconds: How often to sweep all sites; 0 disables it.
        """
        self._on_recheck = on_recheck
        self._on_sweep = on_sweep
        self._recheck_delay = recheck_delay_seconds
        self._poll_interval = poll_interval_seconds
        self._scheduler = AsyncIOScheduler()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler."""
        if self._on_sweep and self._poll_interval > 0:
            self._scheduler.add_job(
                self._handle_sweep,
                IntervalTrigger(seconds=self._poll_interval),
                id=self.SWEEP_JOB_ID,
                replace_existing=True,
            )
        self._scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def schedule_recheck(self, device_id: str) -> str:
        """Queue a status read shortly after a lock/unlock.

        A second command on the same device replaces the pending re-check.
        """
        job_id = f"recheck_{device_id}"
        run_at = datetime.now() + timedelta(seconds=self._recheck_delay)
        self._scheduler.add_job(
            self._handle_recheck,
            DateTrigger(run_date=run_at),
            args=[device_id],
            id=job_id,
            replace_existing=True,
        )
        logger.debug(f"Scheduled status re-check for {device_id} at {run_at}")
        return job_id

    def pending_rechecks(self) -> list[str]:
        return [
            job.id for job in self._scheduler.get_jobs() if job.id.startswith("recheck_")
        ]

    async def _handle_recheck(self, device_id: str) -> None:
        try:
            await self._on_recheck(device_id)
        except Exception as e:
            logger.error(f"Error re-checking status of {device_id}: {e}")

    async def _handle_sweep(self) -> None:
        try:
            await self._on_sweep()
        except Exception as e:
            logger.error(f"Error during status sweep: {e}")
