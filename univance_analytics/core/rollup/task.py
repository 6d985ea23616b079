"""
Rollup Task

ScheduledTask that runs the recurring full rollup on its cron cadence.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict

from ..scheduler import CronSchedule, ScheduledTask
from .errors import Conflict
from .models import JobStatus, JobType, TimeWindow, utcnow

if TYPE_CHECKING:
    from .service import RollupScheduler


class RollupTask(ScheduledTask):
    """
    Recurring full rollup

    Each tick covers the configured look-back window ending now. A tick that
    finds a rollup already processing is skipped, not queued.
    """

    def __init__(
        self,
        rollup: "RollupScheduler",
        schedule: CronSchedule,
        now_func: Callable[[], datetime] = utcnow,
    ):
        super().__init__(
            slug="analytics_rollup",
            cron=schedule,
            now_func=now_func,
        )

        self.rollup = rollup
        self.last_job_id = None

    async def execute(self) -> bool:
        window = TimeWindow.lookback(self._now(), self.rollup.lookback_hours)
        logging.info(f"[RollupTask] Starting full rollup for {window.start.isoformat()} - {window.end.isoformat()}")

        try:
            job = await self.rollup.trigger_run(JobType.FULL, window)
        except Conflict as e:
            logging.info(f"[RollupTask] Skipped: {e.message}")
            return True

        self.last_job_id = job.id
        return job.status == JobStatus.COMPLETED

    def get_status(self) -> Dict:
        status = super().get_status()
        status["last_job_id"] = self.last_job_id
        return status
