from .distributed_lock import RollupLockManager
from .scheduler import CronSchedule, ScheduledTask, Scheduler
