"""
Snapshot and job storage

`encode_*`/`decode_*` form the single serialization boundary: both stores
keep encoded records, so the in-memory store behaves exactly like the
PostgreSQL one.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

import sqlalchemy.exc

from ...utils import execute_query
from ...utils.log import JsonEncoder
from .errors import Conflict, ErrorKind
from .models import (
    JobError,
    JobStatus,
    JobType,
    MetricFamily,
    MetricSnapshot,
    RollupJob,
    ScopedChild,
    TimeWindow,
    ensure_utc,
)

SNAPSHOT_TABLE = "analytics_metric_snapshots"
JOB_TABLE = "analytics_rollup_jobs"


#-----------------------------------------------------------------------------
# Serialization boundary


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True, cls=JsonEncoder)


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes, bytearray)):
        return json.loads(value)
    return value


def _string_keys(mapping: Mapping) -> Dict[str, Any]:
    return {
        str(key): _string_keys(value) if isinstance(value, Mapping) else value
        for key, value in mapping.items()
    }


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def encode_snapshot(snapshot: MetricSnapshot) -> Dict[str, Any]:
    return {
        "scope": snapshot.scope,
        "metric_family": snapshot.family.value,
        "window_start": snapshot.window.start,
        "window_end": snapshot.window.end,
        "totals": _dumps(_string_keys(snapshot.totals)),
        "breakdowns": _dumps(_string_keys(snapshot.breakdowns)),
        "derived": _dumps(_string_keys(snapshot.derived)),
        "rankings": _dumps(snapshot.rankings),
        "scoped_children": _dumps([
            {
                "tenant_id": child.tenant_id,
                "tenant_name": child.tenant_name,
                "totals": _string_keys(child.totals),
                "breakdowns": _string_keys(child.breakdowns),
                "derived": _string_keys(child.derived),
            }
            for child in snapshot.scoped_children
        ]),
        "job_id": snapshot.job_id,
        "created_at": snapshot.created_at,
    }


def decode_snapshot(row: Mapping[str, Any]) -> MetricSnapshot:
    children = [
        ScopedChild(
            tenant_id=str(child["tenant_id"]),
            tenant_name=str(child.get("tenant_name") or ""),
            totals=child.get("totals") or {},
            breakdowns=child.get("breakdowns") or {},
            derived=child.get("derived") or {},
        )
        for child in _loads(row.get("scoped_children"), [])
    ]

    return MetricSnapshot(
        scope=row["scope"],
        family=MetricFamily(row["metric_family"]),
        window=TimeWindow(start=_parse_datetime(row["window_start"]), end=_parse_datetime(row["window_end"])),
        totals=_loads(row.get("totals"), {}),
        breakdowns=_loads(row.get("breakdowns"), {}),
        derived=_loads(row.get("derived"), {}),
        scoped_children=children,
        rankings=_loads(row.get("rankings"), {}),
        created_at=_parse_datetime(row.get("created_at")),
        job_id=row.get("job_id"),
    )


def encode_job(job: RollupJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type.value,
        "scope": job.scope,
        "window_start": job.window.start,
        "window_end": job.window.end,
        "status": job.status.value,
        "processed_sources": job.processed_sources,
        "error": _dumps(job.error.to_dict()) if job.error else None,
        "results": _dumps(job.results),
        "created_at": job.created_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
    }


def decode_job(row: Mapping[str, Any]) -> RollupJob:
    error = _loads(row.get("error"), None)
    return RollupJob(
        id=row["id"],
        job_type=JobType(row["job_type"]),
        scope=row["scope"],
        window=TimeWindow(start=_parse_datetime(row["window_start"]), end=_parse_datetime(row["window_end"])),
        status=JobStatus(row["status"]),
        processed_sources=int(row.get("processed_sources") or 0),
        error=JobError(
            kind=ErrorKind(error["kind"]),
            message=error.get("message", ""),
            family=error.get("family"),
        ) if error else None,
        results=_loads(row.get("results"), {}),
        created_at=_parse_datetime(row["created_at"]),
        started_at=_parse_datetime(row.get("started_at")),
        finished_at=_parse_datetime(row.get("finished_at")),
    )


#-----------------------------------------------------------------------------


class RollupStoreProtocol(Protocol):
    async def save_snapshot(self, snapshot: MetricSnapshot) -> bool: ...

    async def get_latest_snapshot(self, family: MetricFamily, scope: str) -> Optional[MetricSnapshot]: ...

    async def get_snapshot_as_of(self, family: MetricFamily, scope: str, at: datetime) -> Optional[MetricSnapshot]: ...

    async def list_snapshots(
        self, family: MetricFamily, scope: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]: ...

    async def count_snapshots(self) -> Dict[str, int]: ...

    async def create_job(self, job: RollupJob) -> None: ...

    async def update_job(self, job: RollupJob) -> None: ...

    async def get_job(self, job_id: str) -> Optional[RollupJob]: ...

    async def list_jobs(self, limit: int = 5) -> List[RollupJob]: ...

    async def find_processing_jobs(self, scope: str) -> List[RollupJob]: ...

    async def ping(self) -> bool: ...


def _overlaps(job: RollupJob, other: RollupJob) -> bool:
    return job.scope == other.scope and bool(set(job.families) & set(other.families))


#-----------------------------------------------------------------------------


class MemoryRollupStore:
    """Store for local mode and tests, with the same ordering rules as PostgreSQL"""

    def __init__(self):
        self._snapshots: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save_snapshot(self, snapshot: MetricSnapshot) -> bool:
        record = encode_snapshot(snapshot)
        key = (record["scope"], record["metric_family"])

        async with self._lock:
            records = self._snapshots.setdefault(key, [])
            if records and records[-1]["window_start"] >= record["window_start"]:
                return False
            records.append(record)
            return True

    async def get_latest_snapshot(self, family: MetricFamily, scope: str) -> Optional[MetricSnapshot]:
        records = self._snapshots.get((scope, MetricFamily(family).value), [])
        return decode_snapshot(records[-1]) if records else None

    async def get_snapshot_as_of(self, family: MetricFamily, scope: str, at: datetime) -> Optional[MetricSnapshot]:
        at = ensure_utc(at)
        records = self._snapshots.get((scope, MetricFamily(family).value), [])
        for record in reversed(records):
            if record["window_start"] <= at:
                return decode_snapshot(record)
        return None

    async def list_snapshots(
        self, family: MetricFamily, scope: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]:
        start, end = ensure_utc(start), ensure_utc(end)
        records = self._snapshots.get((scope, MetricFamily(family).value), [])
        return [decode_snapshot(record) for record in records if start <= record["window_start"] <= end]

    async def count_snapshots(self) -> Dict[str, int]:
        counts = {family.value: 0 for family in MetricFamily}
        for (_, family), records in self._snapshots.items():
            counts[family] += len(records)
        return counts

    async def create_job(self, job: RollupJob) -> None:
        async with self._lock:
            self._jobs[job.id] = encode_job(job)

    async def update_job(self, job: RollupJob) -> None:
        async with self._lock:
            if job.status == JobStatus.PROCESSING:
                for record in self._jobs.values():
                    other = decode_job(record)
                    if other.id != job.id and other.status == JobStatus.PROCESSING and _overlaps(job, other):
                        raise Conflict(f"job {other.id} is already processing {other.job_type.value}/{other.scope}")
            self._jobs[job.id] = encode_job(job)

    async def get_job(self, job_id: str) -> Optional[RollupJob]:
        record = self._jobs.get(job_id)
        return decode_job(record) if record else None

    async def list_jobs(self, limit: int = 5) -> List[RollupJob]:
        jobs = sorted(self._jobs.values(), key=lambda record: record["created_at"], reverse=True)
        return [decode_job(record) for record in jobs[:max(0, limit)]]

    async def find_processing_jobs(self, scope: str) -> List[RollupJob]:
        return [
            decode_job(record) for record in self._jobs.values()
            if record["status"] == JobStatus.PROCESSING.value and record["scope"] == scope
        ]

    async def ping(self) -> bool:
        return True


#-----------------------------------------------------------------------------


class PgRollupStore:
    """PostgreSQL store on the shared async engine"""

    def __init__(self, db_config: str = ""):
        self.db_config = db_config

    async def save_snapshot(self, snapshot: MetricSnapshot) -> bool:
        # The NOT EXISTS guard rejects windows that are not newer than the latest one.
        query = f"""
        INSERT INTO {SNAPSHOT_TABLE} (
            scope, metric_family, window_start, window_end,
            totals, breakdowns, derived, rankings, scoped_children,
            job_id, created_at
        )
        SELECT
            :scope, :metric_family, :window_start, :window_end,
            CAST(:totals AS JSONB), CAST(:breakdowns AS JSONB), CAST(:derived AS JSONB),
            CAST(:rankings AS JSONB), CAST(:scoped_children AS JSONB),
            :job_id, :created_at
        WHERE NOT EXISTS (
            SELECT 1 FROM {SNAPSHOT_TABLE}
            WHERE scope = :scope AND metric_family = :metric_family AND window_start >= :window_start
        )
        ON CONFLICT (scope, metric_family, window_start) DO NOTHING
        RETURNING id
        """
        row = await execute_query(query, params=encode_snapshot(snapshot), db_config=self.db_config)
        return bool(row)

    async def get_latest_snapshot(self, family: MetricFamily, scope: str) -> Optional[MetricSnapshot]:
        rows = await execute_query(
            f"""
            SELECT * FROM {SNAPSHOT_TABLE}
            WHERE scope = :scope AND metric_family = :metric_family
            ORDER BY window_start DESC
            LIMIT 1
            """,
            params={"scope": scope, "metric_family": MetricFamily(family).value},
            db_config=self.db_config,
        )
        return decode_snapshot(rows[0]) if rows else None

    async def get_snapshot_as_of(self, family: MetricFamily, scope: str, at: datetime) -> Optional[MetricSnapshot]:
        rows = await execute_query(
            f"""
            SELECT * FROM {SNAPSHOT_TABLE}
            WHERE scope = :scope AND metric_family = :metric_family AND window_start <= :at
            ORDER BY window_start DESC
            LIMIT 1
            """,
            params={"scope": scope, "metric_family": MetricFamily(family).value, "at": ensure_utc(at)},
            db_config=self.db_config,
        )
        return decode_snapshot(rows[0]) if rows else None

    async def list_snapshots(
        self, family: MetricFamily, scope: str, start: datetime, end: datetime
    ) -> List[MetricSnapshot]:
        rows = await execute_query(
            f"""
            SELECT * FROM {SNAPSHOT_TABLE}
            WHERE scope = :scope AND metric_family = :metric_family
              AND window_start >= :start AND window_start <= :end
            ORDER BY window_start ASC
            """,
            params={
                "scope": scope,
                "metric_family": MetricFamily(family).value,
                "start": ensure_utc(start),
                "end": ensure_utc(end),
            },
            db_config=self.db_config,
        )
        return [decode_snapshot(row) for row in rows]

    async def count_snapshots(self) -> Dict[str, int]:
        rows = await execute_query(
            f"SELECT metric_family, COUNT(*) AS total FROM {SNAPSHOT_TABLE} GROUP BY metric_family",
            db_config=self.db_config,
        )
        counts = {family.value: 0 for family in MetricFamily}
        for row in rows:
            counts[row["metric_family"]] = int(row["total"])
        return counts

    async def create_job(self, job: RollupJob) -> None:
        await execute_query(
            f"""
            INSERT INTO {JOB_TABLE} (
                id, job_type, scope, window_start, window_end, status,
                processed_sources, error, results, created_at, started_at, finished_at
            ) VALUES (
                :id, :job_type, :scope, :window_start, :window_end, :status,
                :processed_sources, CAST(:error AS JSONB), CAST(:results AS JSONB),
                :created_at, :started_at, :finished_at
            )
            RETURNING id
            """,
            params=encode_job(job),
            db_config=self.db_config,
        )

    async def update_job(self, job: RollupJob) -> None:
        params = encode_job(job)

        # Entering processing must not overlap another processing job's families.
        guard = ""
        if job.status == JobStatus.PROCESSING:
            guard = f"""
                AND NOT EXISTS (
                    SELECT 1 FROM {JOB_TABLE} other
                    WHERE other.status = :status AND other.scope = :scope
                      AND other.id <> :id AND other.job_type = ANY(:overlapping)
                )"""
            params["overlapping"] = overlapping_job_types(job)

        try:
            row = await execute_query(
                f"""
                UPDATE {JOB_TABLE} SET
                    status = :status,
                    processed_sources = :processed_sources,
                    error = CAST(:error AS JSONB),
                    results = CAST(:results AS JSONB),
                    started_at = :started_at,
                    finished_at = :finished_at
                WHERE id = :id{guard}
                RETURNING id
                """,
                params=params,
                db_config=self.db_config,
            )
        except sqlalchemy.exc.IntegrityError:
            raise Conflict(f"another {job.job_type.value} job is already processing scope {job.scope}")

        if job.status == JobStatus.PROCESSING and not row:
            raise Conflict(f"a job overlapping {job.job_type.value} is already processing scope {job.scope}")

    async def get_job(self, job_id: str) -> Optional[RollupJob]:
        rows = await execute_query(
            f"SELECT * FROM {JOB_TABLE} WHERE id = :id",
            params={"id": job_id},
            db_config=self.db_config,
        )
        return decode_job(rows[0]) if rows else None

    async def list_jobs(self, limit: int = 5) -> List[RollupJob]:
        rows = await execute_query(
            f"SELECT * FROM {JOB_TABLE} ORDER BY created_at DESC LIMIT :limit",
            params={"limit": max(0, limit)},
            db_config=self.db_config,
        )
        return [decode_job(row) for row in rows]

    async def find_processing_jobs(self, scope: str) -> List[RollupJob]:
        rows = await execute_query(
            f"SELECT * FROM {JOB_TABLE} WHERE status = :status AND scope = :scope",
            params={"status": JobStatus.PROCESSING.value, "scope": scope},
            db_config=self.db_config,
        )
        return [decode_job(row) for row in rows]

    async def ping(self) -> bool:
        try:
            await execute_query("SELECT 1 AS ok", db_config=self.db_config)
            return True
        except Exception as e:
            logging.error(f"[RollupStore] Database ping failed: {str(e)}")
            return False


def processing_conflicts(job: RollupJob, processing: Iterable[RollupJob]) -> List[RollupJob]:
    """Processing jobs that claim any of `job`'s families in the same scope."""
    return [other for other in processing if other.id != job.id and _overlaps(job, other)]


def overlapping_job_types(job: RollupJob) -> List[str]:
    """Job types sharing at least one family with `job`."""
    return [job_type.value for job_type in JobType if set(job_type.families) & set(job.families)]
