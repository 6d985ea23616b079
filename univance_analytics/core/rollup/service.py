"""
Rollup scheduler

Owns the job lifecycle: conflict checks, the run budget, per-family
collection and aggregation, snapshot persistence and the recurring cadence.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Set, Tuple

from ..distributed_lock import LockKey, RollupLockManager
from ..scheduler import CronSchedule, Scheduler
from ...utils.log_ctx import set_log_ctx
from .aggregator import Aggregator
from .collector import Collector
from .errors import ConfigurationError, Conflict, ErrorKind, RollupTimeout, SourceUnavailable
from .models import (
    GLOBAL_SCOPE,
    FamilyFailed,
    FamilyOutcome,
    FamilySucceeded,
    JobError,
    JobStatus,
    JobType,
    MetricFamily,
    MetricSnapshot,
    RollupJob,
    Tenant,
    TimeWindow,
    ensure_utc,
    utcnow,
)
from .store import RollupStoreProtocol, processing_conflicts
from .task import RollupTask

DEFAULT_CRON = "0 * * * *"
STATUS_RECENT_JOBS = 5

CollectorFactory = Callable[[], AsyncContextManager[Collector]]

#-----------------------------------------------------------------------------

class RollupScheduler:
    """
    Runs rollup jobs and answers snapshot queries

    Every job claims its `(family, scope)` pairs through the lock manager and
    the store before it is created, so a conflicting trigger never leaves a
    job behind.
    """

    def __init__(
        self,
        store: RollupStoreProtocol,
        collector_factory: CollectorFactory,
        aggregator: Optional[Aggregator] = None,
        lock_manager: Optional[RollupLockManager] = None,
        lookback_hours: int = 24,
        run_budget: float = 120.0,
        tick_seconds: float = 30,
        now_func: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.collector_factory = collector_factory
        self.aggregator = aggregator or Aggregator()
        self.lock_manager = lock_manager or RollupLockManager()
        self.lookback_hours = lookback_hours
        self.run_budget = run_budget
        self.scheduler = Scheduler(tick_seconds=tick_seconds)
        self._now = now_func

        self.recurring: Optional[CronSchedule] = None
        self.schedule_error: Optional[ConfigurationError] = None
        self._inflight: Set[asyncio.Task] = set()

    #-----------------------------------------------------
    # Cadence

    def schedule_recurring(self, cron_spec: str = DEFAULT_CRON, strict: bool = False) -> CronSchedule:
        """
        Register the recurring full rollup

        An invalid expression falls back to hourly unless `strict` is set, in
        which case the ConfigurationError is raised.
        """
        try:
            schedule = CronSchedule(cron_spec)
            self.schedule_error = None
        except ConfigurationError as e:
            if strict:
                raise
            logging.error(
                f"[RollupScheduler] {e.message}, falling back to '{DEFAULT_CRON}'",
                extra={"cron": cron_spec}
            )
            self.schedule_error = e
            schedule = CronSchedule(DEFAULT_CRON)

        self.scheduler.register_task(RollupTask(self, schedule, now_func=self._now))
        self.recurring = schedule
        logging.info(f"[RollupScheduler] Recurring rollup scheduled: {schedule.source}")
        return schedule

    async def start(self):
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

        for background in list(self._inflight):
            background.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    #-----------------------------------------------------
    # Runs

    async def trigger_run(
        self,
        family: Any,
        window: Optional[TimeWindow] = None,
        scope: Optional[str] = GLOBAL_SCOPE,
    ) -> RollupJob:
        """
        Run one rollup to completion and return the finished job

        Raises ConfigurationError for an invalid family, scope or window and
        Conflict when any claimed family is already processing. Every other
        failure is recorded on the returned job.
        """
        job, keys, execution_id = await self._prepare(family, window, scope)
        await self._execute(job, keys, execution_id)
        return job

    async def submit_run(
        self,
        family: Any,
        window: Optional[TimeWindow] = None,
        scope: Optional[str] = GLOBAL_SCOPE,
    ) -> RollupJob:
        """Validate and create the job now, run it in the background, return it pending."""
        job, keys, execution_id = await self._prepare(family, window, scope)

        background = asyncio.create_task(self._execute(job, keys, execution_id))
        self._inflight.add(background)
        background.add_done_callback(self._on_background_done)

        return replace(job, results=dict(job.results))

    def _on_background_done(self, background: asyncio.Task):
        self._inflight.discard(background)
        if background.cancelled():
            return
        error = background.exception()
        if error is not None:
            logging.error(f"[RollupScheduler] Background run crashed: {str(error)}", exc_info=error)

    async def _prepare(
        self,
        family: Any,
        window: Optional[TimeWindow],
        scope: Optional[str],
    ) -> Tuple[RollupJob, List[LockKey], str]:
        job_type = JobType.parse(family)

        scope = (scope or GLOBAL_SCOPE).strip()
        if not scope:
            raise ConfigurationError("scope must not be empty")

        now = self._now()
        if window is None:
            window = TimeWindow.lookback(now, self.lookback_hours)

        job = RollupJob(job_type=job_type, window=window, scope=scope, created_at=now)
        keys = [(member.value, scope) for member in job.families]

        execution_id = await self.lock_manager.try_acquire(keys)
        if execution_id is None:
            raise Conflict(f"{job_type.value} rollup for scope '{scope}' is already processing")

        try:
            conflicts = processing_conflicts(job, await self.store.find_processing_jobs(scope))
            if conflicts:
                raise Conflict(
                    f"job {conflicts[0].id} is already processing {conflicts[0].job_type.value}/{scope}"
                )
            await self.store.create_job(job)
        except BaseException:
            await self.lock_manager.release(keys, execution_id)
            raise

        logging.info(
            f"[RollupScheduler] Job {job.id} created: {job_type.value}/{scope}",
            extra={"job_id": job.id, "window": window.to_dict()}
        )
        return job, keys, execution_id

    async def _execute(self, job: RollupJob, keys: List[LockKey], execution_id: str):
        with set_log_ctx({"job_id": job.id, "scope": job.scope}):
            try:
                job.transition(JobStatus.PROCESSING, self._now())
                try:
                    await self.store.update_job(job)
                except Exception as e:
                    # Conflict keeps its kind; any other store error is Internal.
                    logging.error(f"[RollupScheduler] Job {job.id} could not start: {str(e)}")
                    job.fail(JobError.from_exception(e), self._now())
                    await self._save_job(job)
                    return

                try:
                    outcomes = await asyncio.wait_for(self._run_families(job), timeout=self.run_budget)
                except asyncio.TimeoutError:
                    timeout = RollupTimeout(f"rollup exceeded its {self.run_budget}s budget")
                    for family in job.families:
                        job.results.setdefault(family.value, ErrorKind.TIMEOUT.value)
                    job.fail(JobError.from_exception(timeout), self._now())
                except asyncio.CancelledError:
                    job.fail(JobError(ErrorKind.INTERNAL, "rollup cancelled by shutdown"), self._now())
                    await self._save_job(job)
                    raise
                except Exception as e:
                    logging.error(f"[RollupScheduler] Job {job.id} crashed: {str(e)}", exc_info=True)
                    job.fail(JobError.from_exception(e), self._now())
                else:
                    failures = [outcome for outcome in outcomes if isinstance(outcome, FamilyFailed)]
                    if failures:
                        job.fail(failures[0].error, self._now())
                    else:
                        job.transition(JobStatus.COMPLETED, self._now())

                await self._save_job(job)

                if job.status == JobStatus.COMPLETED:
                    logging.info(
                        f"[RollupScheduler] Job {job.id} completed, {job.processed_sources} sources processed"
                    )
                else:
                    logging.error(
                        f"[RollupScheduler] Job {job.id} failed: {job.error.kind.value}: {job.error.message}",
                        extra={"results": job.results}
                    )

            finally:
                await self.lock_manager.release(keys, execution_id)

    async def _run_families(self, job: RollupJob) -> List[FamilyOutcome]:
        async with self.collector_factory() as collector:
            tenants: List[Tenant] = []
            if job.scope == GLOBAL_SCOPE:
                try:
                    tenants = await collector.list_tenants()
                except SourceUnavailable as e:
                    # Continue without per-tenant children.
                    logging.warning(f"[RollupScheduler] {e.message}, continuing without tenants")
                    job.results["tenants"] = e.kind.value

            return await asyncio.gather(*[
                self._run_family(job, collector, family, tenants) for family in job.families
            ])

    async def _run_family(
        self,
        job: RollupJob,
        collector: Collector,
        family: MetricFamily,
        tenants: List[Tenant],
    ) -> FamilyOutcome:
        with set_log_ctx({"family": family.value}):
            fetched = 0
            try:
                scoped = job.scope != GLOBAL_SCOPE
                collected = await collector.collect(family, job.window, scope_filter=job.scope if scoped else None)
                fetched = collected.fetched
                collected.ensure_viable(collector.required_sources(family, tenant=scoped))

                tenant_results = {}
                if tenants:
                    tenant_results = await collector.collect_tenants(family, job.window, [t.id for t in tenants])
                    fetched += sum(result.fetched for result in tenant_results.values())

                previous = await self.store.get_latest_snapshot(family, job.scope)
                output = self.aggregator.aggregate(
                    collected,
                    job.window,
                    tenants=tenants,
                    tenant_results=tenant_results,
                    previous=previous,
                    created_at=self._now(),
                    job_id=job.id,
                )

                saved = 0
                for snapshot in output.all_snapshots:
                    if await self.store.save_snapshot(snapshot):
                        saved += 1
                    else:
                        logging.warning(
                            f"[RollupScheduler] Dropped {family.value}/{snapshot.scope} snapshot: "
                            f"window start {snapshot.window_start.isoformat()} is not newer than the stored one"
                        )

                outcome: FamilyOutcome = FamilySucceeded(family=family, snapshots_saved=saved, sources_fetched=fetched)
                job.results[family.value] = JobStatus.COMPLETED.value
                logging.info(f"[RollupScheduler] {family.value} rollup saved {saved} snapshot(s)")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = JobError.from_exception(e, family=family.value)
                outcome = FamilyFailed(family=family, error=error, sources_fetched=fetched)
                job.results[family.value] = error.kind.value
                logging.error(
                    f"[RollupScheduler] {family.value} rollup failed: {error.kind.value}: {error.message}",
                    exc_info=error.kind == ErrorKind.INTERNAL
                )

            job.processed_sources += outcome.sources_fetched
            await self._save_job(job)
            return outcome

    async def _save_job(self, job: RollupJob):
        try:
            await self.store.update_job(job)
        except Exception as e:
            logging.error(f"[RollupScheduler] Failed to save job {job.id}: {str(e)}")

    #-----------------------------------------------------
    # Queries

    async def get_latest_snapshot(self, family: Any, scope: str = GLOBAL_SCOPE) -> Optional[MetricSnapshot]:
        return await self.store.get_latest_snapshot(self._family(family), scope or GLOBAL_SCOPE)

    async def get_snapshot_as_of(
        self, family: Any, scope: str = GLOBAL_SCOPE, at: Optional[datetime] = None
    ) -> Optional[MetricSnapshot]:
        """Most recent snapshot whose window starts at or before `at`."""
        at = ensure_utc(at) if at is not None else self._now()
        return await self.store.get_snapshot_as_of(self._family(family), scope or GLOBAL_SCOPE, at)

    async def list_snapshots(
        self, family: Any, scope: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]:
        return await self.store.list_snapshots(self._family(family), scope or GLOBAL_SCOPE, start, end)

    async def get_job(self, job_id: str) -> Optional[RollupJob]:
        return await self.store.get_job(job_id)

    async def list_jobs(self, limit: int = 5) -> List[RollupJob]:
        return await self.store.list_jobs(limit)

    async def get_status(self) -> Dict[str, Any]:
        """Scheduler state, store health, snapshot counts per family and the latest jobs."""
        store_ok = await self.store.ping()

        snapshots: Optional[Dict[str, int]] = None
        recent_jobs: List[Dict[str, Any]] = []
        if store_ok:
            try:
                snapshots = await self.store.count_snapshots()
                recent_jobs = [job.to_dict() for job in await self.store.list_jobs(STATUS_RECENT_JOBS)]
            except Exception as e:
                logging.warning(f"[RollupScheduler] Status read from store failed: {str(e)}")

        return {
            "scheduler": self.scheduler.get_tasks_status(),
            "recurring": self.recurring.source if self.recurring else None,
            "schedule_error": self.schedule_error.message if self.schedule_error else None,
            "inflight_runs": len(self._inflight),
            "store": "ok" if store_ok else "unavailable",
            "snapshots": snapshots,
            "recent_jobs": recent_jobs,
        }

    @staticmethod
    def _family(family: Any) -> MetricFamily:
        try:
            return MetricFamily(family)
        except ValueError:
            raise ConfigurationError(f"unknown metric family '{family}'")

#-----------------------------------------------------------------------------
