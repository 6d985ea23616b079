"""
Background task scheduler
"""

import asyncio, logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

from croniter import croniter

from .rollup.errors import ConfigurationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_cron(expression: str) -> str:
    """
    Accept 5-field cron and the 6-field seconds-first form

    croniter reads a sixth field as seconds at the end, so a leading seconds
    field is moved there.
    """
    fields = (expression or "").split()
    if len(fields) == 5:
        return " ".join(fields)
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1])
    raise ConfigurationError(f"invalid cron expression '{expression}': expected 5 or 6 fields")


class CronSchedule:
    """A validated cron expression"""

    def __init__(self, expression: str):
        self.source = (expression or "").strip()
        self.expression = normalize_cron(self.source)
        if not croniter.is_valid(self.expression):
            raise ConfigurationError(f"invalid cron expression '{self.source}'")

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self.expression, moment).get_next(datetime)

    def __repr__(self) -> str:
        return f"CronSchedule({self.source!r})"


class ScheduledTask:
    """Cron-driven task base class: subclasses implement `execute`"""

    def __init__(
        self,
        slug: str,
        cron: CronSchedule,
        now_func: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize a scheduled task

        Args:
            slug: Task identifier
            cron: When the task is due
            now_func: Clock used for scheduling decisions
        """
        if cron is None:
            raise ConfigurationError(f"task {slug} has no cron schedule")

        self.slug = slug
        self.cron = cron
        self._now = now_func

        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.is_running = False
        self.error_count = 0
        self.success_count = 0
        self.last_error: Optional[str] = None

        self._calculate_next_run()

    async def execute(self) -> bool:
        """Execute the task"""
        raise NotImplementedError("Subclasses must implement execute method")

    def should_run(self) -> bool:
        if self.is_running:
            return False

        return self._now() >= self.next_run

    async def run(self) -> bool:
        """Execute once, keeping counters and the next run time current"""
        if self.is_running:
            logging.warning(f"Task {self.slug} is already running")
            return False

        self.is_running = True
        self.last_run = self._now()

        try:
            success = await self.execute()

            if success:
                self.success_count += 1
                self.last_error = None
                logging.info(f"Task {self.slug} completed successfully")
            else:
                self.error_count += 1
                self.last_error = "Task execution returned False"
                logging.error(f"Task {self.slug} failed")

            return success

        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            logging.error(f"Task {self.slug} execution error: {str(e)}", exc_info=True)
            return False

        finally:
            self.is_running = False
            self._calculate_next_run()

    def _calculate_next_run(self):
        self.next_run = self.cron.next_after(self._now())

    def get_status(self) -> Dict:
        return {
            "slug": self.slug,
            "cron": self.cron.source,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "is_running": self.is_running,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class Scheduler:
    """Background tick loop that launches due tasks"""

    def __init__(self, tick_seconds: float = 60):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.tick_seconds = tick_seconds
        self.running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    def register_task(self, task: ScheduledTask):
        self.tasks[task.slug] = task

    def get_task(self, slug: str) -> Optional[ScheduledTask]:
        return self.tasks.get(slug)

    async def trigger_task(self, slug: str) -> bool:
        task = self.get_task(slug)
        if not task:
            logging.error(f"Task not found: {slug}")
            return False

        return await task.run()

    def get_tasks_status(self) -> Dict:
        return {
            "running": self.running,
            "total_tasks": len(self.tasks),
            "tasks": {slug: task.get_status() for slug, task in self.tasks.items()},
        }

    def launch_due_tasks(self) -> int:
        """Start every due task in the background; returns how many were started."""
        launched = 0
        for task in self.tasks.values():
            if task.should_run():
                logging.info(f"Executing scheduled task: {task.slug}")
                background = asyncio.create_task(task.run())
                self._inflight.add(background)
                background.add_done_callback(self._inflight.discard)
                launched += 1
        return launched

    async def start(self):
        if self.running:
            logging.warning("Scheduler is already running")
            return

        self.running = True
        self._scheduler_task = asyncio.create_task(self._run_scheduler())
        logging.info(f"Scheduler started with {len(self.tasks)} task(s)")

    async def stop(self):
        self.running = False
        logging.info("Stopping scheduler...")

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                logging.info("Scheduler task cancelled successfully")

        for background in list(self._inflight):
            background.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _run_scheduler(self):
        logging.info("Scheduler main loop started")

        while self.running:
            try:
                self.launch_due_tasks()
                await asyncio.sleep(self.tick_seconds)

            except asyncio.CancelledError:
                logging.info("Scheduler loop cancelled")
                break
            except Exception as e:
                logging.error(f"Scheduler loop error: {str(e)}", exc_info=True)
                await asyncio.sleep(self.tick_seconds)
