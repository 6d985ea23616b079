"""Tests for univance_analytics.core.scheduler."""

from datetime import timedelta

import pytest

from univance_analytics.core.rollup import ConfigurationError
from univance_analytics.core.scheduler import CronSchedule, ScheduledTask, Scheduler, normalize_cron
from tests.helpers import FakeClock, T0

EVERY_FIVE = "*/5 * * * *"


class CountingTask(ScheduledTask):
    def __init__(self, outcome=True, cron=EVERY_FIVE, **kwargs):
        super().__init__(slug="counting", cron=CronSchedule(cron) if isinstance(cron, str) else cron, **kwargs)
        self.outcome = outcome
        self.calls = 0

    async def execute(self) -> bool:
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class TestCron:
    def test_five_fields_pass_through(self):
        assert normalize_cron("0  *  * * *") == "0 * * * *"

    def test_seconds_field_moves_to_the_end(self):
        assert normalize_cron("30 0 * * * *") == "0 * * * * 30"

    @pytest.mark.parametrize("expression", ["", "* * *", "1 2 3 4 5 6 7", "99 * * * *", "0 * * * mon-xyz"])
    def test_invalid(self, expression):
        with pytest.raises(ConfigurationError):
            CronSchedule(expression)

    def test_next_after(self):
        assert CronSchedule("0 * * * *").next_after(T0 + timedelta(minutes=1)) == T0 + timedelta(hours=1)


class TestScheduledTask:
    def test_requires_schedule(self):
        with pytest.raises(ConfigurationError):
            CountingTask(cron=None)

    async def test_run_updates_counters_and_next_run(self):
        clock = FakeClock()
        task = CountingTask(now_func=clock)
        assert not task.should_run()

        clock.advance(minutes=5)
        assert task.should_run()
        assert await task.run() is True

        assert task.success_count == 1
        assert task.next_run == T0 + timedelta(minutes=10)
        assert not task.should_run()

    async def test_failures_are_counted(self):
        clock = FakeClock()
        task = CountingTask(outcome=RuntimeError("boom"), now_func=clock)

        assert await task.run() is False
        assert task.error_count == 1
        assert task.last_error == "boom"
        assert task.next_run == T0 + timedelta(minutes=5)


class TestScheduler:
    async def test_launch_due_tasks(self):
        clock = FakeClock()
        scheduler = Scheduler(tick_seconds=0.01)
        task = CountingTask(cron="0 * * * *", now_func=clock)
        scheduler.register_task(task)

        assert scheduler.launch_due_tasks() == 0

        clock.advance(hours=1)
        assert scheduler.launch_due_tasks() == 1
        await scheduler.stop()

    async def test_trigger_unknown_task(self):
        assert await Scheduler().trigger_task("missing") is False

    async def test_status(self):
        clock = FakeClock()
        scheduler = Scheduler()
        scheduler.register_task(CountingTask(now_func=clock))

        status = scheduler.get_tasks_status()

        assert status["total_tasks"] == 1
        assert status["tasks"]["counting"]["cron"] == EVERY_FIVE
        assert status["tasks"]["counting"]["next_run"] == (T0 + timedelta(minutes=5)).isoformat()
