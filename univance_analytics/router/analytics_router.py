"""
Analytics router: manual rollup trigger, job and snapshot reads, time series, school rankings, dashboard
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ..core.auth import verify_manage_key
from ..core.rollup import GLOBAL_SCOPE, ConfigurationError, Conflict, MetricFamily, MetricSnapshot, TimeWindow
from ..core.rollup.aggregator import default_aggregators
from ..core.rollup.arithmetic import SERIES_PERIODS, as_number, change_percentage, economy_health, group_series
from ..core.rollup.models import ensure_utc, utcnow
from ..core.rollup.service import RollupScheduler
from ..utils.http import error_response, success_response

# Dashboard period-over-period comparison distance.
DASHBOARD_PERIOD = timedelta(days=7)
ECONOMY_HEALTH_DEFAULT_RANGE = timedelta(days=30)
SERIES_DEFAULT_RANGE = timedelta(days=90)

# Total that ranks schools within a family.
SCHOOL_RANKING_TOTALS = {
    MetricFamily.USER:  "totalUsers",
    MetricFamily.TASK:  "totalTasks",
    MetricFamily.POINT: "totalPointsEarned",
    MetricFamily.BADGE: "totalBadgesAwarded",
}


class UpdateRequest(BaseModel):
    """Manual rollup trigger"""

    # Validated by the handler, which answers bad values with 400.
    type: Optional[Any] = Field(default=None, description="Metric family: user, task, point, badge or full")
    startDate: Optional[Any] = Field(default=None, description="Window start, ISO 8601")
    endDate: Optional[Any] = Field(default=None, description="Window end, ISO 8601")
    scope: Optional[Any] = Field(default=None, description="'global' or a school id")


router = APIRouter(prefix="/api/analytics", tags=["analytics"])

#-----------------------------------------------------------------------------

def _rollup(request: Request) -> RollupScheduler:
    return request.app.state.rollup


def _parse_date(value: Any, name: str) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"invalid {name} '{value}', expected an ISO 8601 date")
    if not value.strip():
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip()))
    except ValueError:
        raise ConfigurationError(f"invalid {name} '{value}', expected an ISO 8601 date")


def _parse_family(value: str) -> MetricFamily:
    try:
        return MetricFamily(value.strip().lower())
    except ValueError:
        raise ConfigurationError(f"unknown metric family '{value}'")


def _request_window(start: Optional[datetime], end: Optional[datetime], lookback_hours: int) -> Optional[TimeWindow]:
    if start is None and end is None:
        return None
    if end is None:
        end = utcnow()
    if start is None:
        start = end - timedelta(hours=lookback_hours)
    return TimeWindow(start=start, end=end)


def _date_range(start_date: Optional[str], end_date: Optional[str], default: timedelta) -> Tuple[datetime, datetime]:
    end = _parse_date(end_date, "endDate") or utcnow()
    start = _parse_date(start_date, "startDate") or end - default
    if end <= start:
        raise ConfigurationError("endDate must be after startDate")
    return start, end


def _zero_totals(family: MetricFamily, scope: str) -> Dict[str, Any]:
    summary = default_aggregators()[family].summarize({}, tenant=scope != GLOBAL_SCOPE)
    return dict(summary.totals)


def _family_summary(
    family: MetricFamily,
    scope: str,
    latest: Optional[MetricSnapshot],
    earlier: Optional[MetricSnapshot],
) -> Dict[str, Any]:
    totals = _zero_totals(family, scope)
    if latest is not None:
        totals.update(latest.totals)

    previous_totals = earlier.totals if earlier is not None else {}
    change = {
        name: change_percentage(value, previous_totals.get(name)) if earlier is not None else 0
        for name, value in totals.items()
        if isinstance(value, (int, float))
    }

    return {
        "totals": totals,
        "derived": dict(latest.derived) if latest is not None else {},
        "change": change,
        "windowEnd": latest.window.end.isoformat() if latest is not None else None,
    }

#-----------------------------------------------------------------------------

@router.post("/update")
async def trigger_update(body: UpdateRequest, request: Request, authorized: bool = Depends(verify_manage_key)):
    """
    Start a rollup in the background

    Returns 400 for an invalid family, scope or window and 409 when the
    family is already processing for the scope.
    """
    rollup = _rollup(request)
    try:
        if body.scope is not None and not isinstance(body.scope, str):
            raise ConfigurationError(f"invalid scope '{body.scope}'")
        window = _request_window(
            _parse_date(body.startDate, "startDate"),
            _parse_date(body.endDate, "endDate"),
            rollup.lookback_hours,
        )
        job = await rollup.submit_run(body.type, window=window, scope=body.scope or GLOBAL_SCOPE)

    except ConfigurationError as e:
        return error_response(e.message, status_code=400, kind=e.kind.value, request=request)
    except Conflict as e:
        return error_response(e.message, status_code=409, kind=e.kind.value, request=request)

    return success_response(
        data={"jobId": job.id, "job": job.to_dict()},
        message=f"{job.job_type.value} rollup started",
        request=request,
    )


@router.get("/jobs")
async def list_jobs(
    request: Request,
    limit: int = Query(5, ge=1, le=100),
    authorized: bool = Depends(verify_manage_key),
):
    jobs = await _rollup(request).list_jobs(limit)
    return success_response(data=[job.to_dict() for job in jobs], request=request)


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request, authorized: bool = Depends(verify_manage_key)):
    job = await _rollup(request).get_job(job_id)
    if job is None:
        return error_response(f"job {job_id} not found", status_code=404, request=request)
    return success_response(data=job.to_dict(), request=request)


@router.get("/snapshots/{family}/latest")
async def get_latest_snapshot(
    family: str,
    request: Request,
    scope: str = Query(GLOBAL_SCOPE),
    authorized: bool = Depends(verify_manage_key),
):
    try:
        metric_family = _parse_family(family)
    except ConfigurationError as e:
        return error_response(e.message, status_code=400, kind=e.kind.value, request=request)

    snapshot = await _rollup(request).get_latest_snapshot(metric_family, scope)
    if snapshot is None:
        return error_response(f"no {metric_family.value} snapshot for scope '{scope}'", status_code=404, request=request)
    return success_response(data=snapshot.to_dict(), request=request)


@router.get("/snapshots/{family}/as-of")
async def get_snapshot_as_of(
    family: str,
    request: Request,
    date: str = Query(..., description="ISO 8601 date"),
    scope: str = Query(GLOBAL_SCOPE),
    authorized: bool = Depends(verify_manage_key),
):
    try:
        metric_family = _parse_family(family)
        at = _parse_date(date, "date")
        if at is None:
            raise ConfigurationError("date is required")
    except ConfigurationError as e:
        return error_response(e.message, status_code=400, kind=e.kind.value, request=request)

    snapshot = await _rollup(request).get_snapshot_as_of(metric_family, scope, at)
    if snapshot is None:
        return error_response(
            f"no {metric_family.value} snapshot for scope '{scope}' as of {at.isoformat()}",
            status_code=404,
            request=request,
        )
    return success_response(data=snapshot.to_dict(), request=request)


@router.get("/snapshots/{family}")
async def get_snapshot_series(
    family: str,
    request: Request,
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    period: str = Query("monthly", description="daily, weekly or monthly"),
    scope: str = Query(GLOBAL_SCOPE),
    authorized: bool = Depends(verify_manage_key),
):
    """
    Snapshot totals grouped by day, ISO week or month

    Counts of new activity are summed within a bucket and levels such as
    totalUsers are averaged. An empty range returns an empty series.
    """
    try:
        metric_family = _parse_family(family)
        if period not in SERIES_PERIODS:
            raise ConfigurationError(f"invalid period '{period}', expected one of {', '.join(SERIES_PERIODS)}")
        start, end = _date_range(startDate, endDate, SERIES_DEFAULT_RANGE)
    except ConfigurationError as e:
        return error_response(e.message, status_code=400, kind=e.kind.value, request=request)

    snapshots = await _rollup(request).list_snapshots(metric_family, scope, start, end)
    series = group_series(((snapshot.window_start, snapshot.totals) for snapshot in snapshots), period)

    return success_response(
        data={
            "family": metric_family.value,
            "scope": scope,
            "period": period,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "series": series,
        },
        request=request,
    )


@router.get("/schools/{family}")
async def get_school_ranking(
    family: str,
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    authorized: bool = Depends(verify_manage_key),
):
    """Schools from the latest global snapshot, highest family total first."""
    try:
        metric_family = _parse_family(family)
    except ConfigurationError as e:
        return error_response(e.message, status_code=400, kind=e.kind.value, request=request)

    snapshot = await _rollup(request).get_latest_snapshot(metric_family, GLOBAL_SCOPE)
    if snapshot is None:
        return error_response(f"no {metric_family.value} snapshot for scope '{GLOBAL_SCOPE}'", status_code=404, request=request)

    sort_by = SCHOOL_RANKING_TOTALS[metric_family]
    ranked = sorted(
        snapshot.scoped_children,
        key=lambda child: (-as_number(child.totals.get(sort_by)), child.tenant_id),
    )

    return success_response(
        data={
            "family": metric_family.value,
            "sortBy": sort_by,
            "windowEnd": snapshot.window.end.isoformat(),
            "schools": [child.to_dict() for child in ranked[:limit]],
        },
        request=request,
    )


@router.get("/dashboard")
async def get_dashboard(
    request: Request,
    scope: str = Query(GLOBAL_SCOPE),
    authorized: bool = Depends(verify_manage_key),
):
    """Latest totals per family with the change against the snapshot one period earlier."""
    rollup = _rollup(request)

    families = {}
    for family in MetricFamily:
        latest = await rollup.get_latest_snapshot(family, scope)
        earlier = None
        if latest is not None:
            earlier = await rollup.get_snapshot_as_of(family, scope, latest.window_start - DASHBOARD_PERIOD)
        families[family.value] = _family_summary(family, scope, latest, earlier)

    jobs = await rollup.list_jobs(5)

    return success_response(
        data={
            "scope": scope,
            "families": families,
            "recentJobs": [job.to_dict() for job in jobs],
        },
        request=request,
    )


@router.get("/points/economy-health")
async def get_economy_health(
    request: Request,
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    scope: str = Query(GLOBAL_SCOPE),
    authorized: bool = Depends(verify_manage_key),
):
    try:
        start, end = _date_range(startDate, endDate, ECONOMY_HEALTH_DEFAULT_RANGE)
    except ConfigurationError as e:
        return error_response(e.message, status_code=400, kind=e.kind.value, request=request)

    snapshots = await _rollup(request).list_snapshots(MetricFamily.POINT, scope, start, end)
    if not snapshots:
        logging.info(f"[Analytics] No point snapshots for {scope} between {start.isoformat()} and {end.isoformat()}")
        health = economy_health({}, {}, end, end)
    else:
        earliest, latest = snapshots[0], snapshots[-1]
        health = economy_health(earliest.totals, latest.totals, earliest.window.end, latest.window.end)

    return success_response(
        data={
            "scope": scope,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "snapshots": len(snapshots),
            "health": health,
        },
        request=request,
    )
