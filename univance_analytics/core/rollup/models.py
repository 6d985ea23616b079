"""
Data models for the rollup pipeline

Defines the metric families, time windows, snapshots and rollup jobs.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigurationError, ErrorKind, RollupError

GLOBAL_SCOPE = "global"


class MetricFamily(str, Enum):
    """A related set of counters computed by one aggregator"""
    USER = "user"
    TASK = "task"
    POINT = "point"
    BADGE = "badge"


class JobType(str, Enum):
    """Which families a rollup job covers"""
    USER = "user"
    TASK = "task"
    POINT = "point"
    BADGE = "badge"
    FULL = "full"

    @property
    def families(self) -> List[MetricFamily]:
        if self == JobType.FULL:
            return list(MetricFamily)
        return [MetricFamily(self.value)]

    @classmethod
    def parse(cls, value: Union[str, "JobType", MetricFamily]) -> "JobType":
        if isinstance(value, JobType):
            return value
        if isinstance(value, MetricFamily):
            return cls(value.value)

        normalized = str(value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise ConfigurationError(f"invalid metric family '{value}', expected one of: {allowed}")


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open aggregation window [start, end)"""
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end <= self.start:
            raise ConfigurationError(
                f"window end {self.end.isoformat()} must be after start {self.start.isoformat()}"
            )

    @classmethod
    def lookback(cls, now: datetime, hours: int) -> "TimeWindow":
        """Window of `hours` ending at `now`, truncated to the minute."""
        end = ensure_utc(now).replace(second=0, microsecond=0)
        return cls(start=end - timedelta(hours=hours), end=end)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class Tenant:
    """A school: the unit of per-tenant breakdown"""
    id: str
    name: str = ""


@dataclass(frozen=True)
class ScopedChild:
    """Per-tenant sub-document embedded in a global snapshot"""
    tenant_id: str
    tenant_name: str
    totals: Dict[str, float]
    breakdowns: Dict[str, Dict[str, float]]
    derived: Dict[str, Optional[float]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "tenantName": self.tenant_name,
            "totals": self.totals,
            "breakdowns": self.breakdowns,
            "derived": self.derived,
        }


@dataclass(frozen=True)
class MetricSnapshot:
    """
    Immutable record of one family's metrics for one scope and window

    `derived` is recomputable from `totals` (and the previous snapshot for
    rate-of-change fields). `created_at` is the only time-dependent field.
    """
    scope: str
    family: MetricFamily
    window: TimeWindow
    totals: Dict[str, float]
    breakdowns: Dict[str, Dict[str, float]]
    derived: Dict[str, Optional[float]]
    scoped_children: List[ScopedChild] = field(default_factory=list)
    rankings: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    job_id: Optional[str] = None

    def __post_init__(self):
        if not self.scope:
            raise ValueError("scope cannot be empty")

    @property
    def window_start(self) -> datetime:
        return self.window.start

    def child(self, tenant_id: str) -> Optional[ScopedChild]:
        for child in self.scoped_children:
            if child.tenant_id == tenant_id:
                return child
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "family": self.family.value,
            "windowStart": self.window.start.isoformat(),
            "windowEnd": self.window.end.isoformat(),
            "totals": self.totals,
            "breakdowns": self.breakdowns,
            "derived": self.derived,
            "scopedChildren": [child.to_dict() for child in self.scoped_children],
            "rankings": self.rankings,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "jobId": self.job_id,
        }


@dataclass
class JobError:
    kind: ErrorKind
    message: str
    family: Optional[str] = None

    @classmethod
    def from_exception(cls, error: Exception, family: Optional[str] = None) -> "JobError":
        if isinstance(error, RollupError):
            return cls(kind=error.kind, message=error.message, family=error.family or family)
        return cls(kind=ErrorKind.INTERNAL, message=str(error) or type(error).__name__, family=family)

    def to_dict(self) -> Dict[str, Any]:
        result = {"kind": self.kind.value, "message": self.message}
        if self.family:
            result["family"] = self.family
        return result


@dataclass
class RollupJob:
    """One scheduled or manual run; status only moves forward"""
    job_type: JobType
    window: TimeWindow
    scope: str = GLOBAL_SCOPE
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    processed_sources: int = 0
    error: Optional[JobError] = None
    results: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def families(self) -> List[MetricFamily]:
        return self.job_type.families

    def transition(self, status: JobStatus, now: Optional[datetime] = None):
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"illegal job transition {self.status.value} -> {status.value}")

        now = now or utcnow()
        self.status = status
        if status == JobStatus.PROCESSING:
            self.started_at = now
        elif status.terminal:
            self.finished_at = now

    def fail(self, error: JobError, now: Optional[datetime] = None):
        self.error = error
        self.transition(JobStatus.FAILED, now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobType": self.job_type.value,
            "scope": self.scope,
            "windowStart": self.window.start.isoformat(),
            "windowEnd": self.window.end.isoformat(),
            "status": self.status.value,
            "processedSources": self.processed_sources,
            "error": self.error.to_dict() if self.error else None,
            "results": dict(self.results),
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class FamilySucceeded:
    family: MetricFamily
    snapshots_saved: int
    sources_fetched: int


@dataclass(frozen=True)
class FamilyFailed:
    family: MetricFamily
    error: JobError
    sources_fetched: int = 0


FamilyOutcome = Union[FamilySucceeded, FamilyFailed]
