"""
Shared arithmetic for metric aggregation

All helpers are pure and never return NaN or infinity.
"""

import math
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

SECONDS_PER_DAY = 86400


def as_number(value: Any) -> float:
    """Coerce a raw upstream value to a finite number, 0 when unusable."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def normalize(value: float) -> float:
    """Integral floats become ints so counters serialize as 60 rather than 60.0."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0
    result = numerator / denominator
    return normalize(result) if math.isfinite(result) else 0


def percentage(part: float, total: float) -> float:
    """part / total * 100, or 0 when total is 0."""
    if not total:
        return 0
    return normalize(ratio(part, total) * 100)


def completion_rate(completed: float, total: float) -> float:
    return percentage(completed, total)


def change_percentage(current: float, previous: Optional[float]) -> float:
    """Period-over-period change; 0 when there is no usable baseline."""
    if previous is None or not previous:
        return 0
    return normalize(ratio(current - previous, previous) * 100)


def days_between(later: datetime, earlier: datetime) -> float:
    return abs((later - earlier).total_seconds()) / SECONDS_PER_DAY


def time_normalized_rate(latest: float, earliest: float, days: float) -> float:
    """Change per day, never dividing by less than one day."""
    return normalize(ratio(latest - earliest, max(1.0, days)))


def with_defaults(counts: Mapping[str, float], keys: Iterable[str]) -> Dict[str, float]:
    """Zero-fill the known keys and keep every unknown key verbatim."""
    result = {key: 0 for key in keys}
    for key, value in counts.items():
        result[str(key)] = normalize(result.get(str(key), 0) + value)
    return result


def economy_health(
    earliest_totals: Mapping[str, float],
    latest_totals: Mapping[str, float],
    earliest_at: datetime,
    latest_at: datetime,
) -> Dict[str, float]:
    """
    Compare two point snapshots:

    - earning/spending rates are points per day between the snapshots
    - velocity is earning minus spending
    - economyBalance is spent / earned * 100 on the latest snapshot
    - inflationRate is the change of the average balance per account
    """
    days = days_between(latest_at, earliest_at)

    earning_rate = time_normalized_rate(
        as_number(latest_totals.get("totalPointsEarned")),
        as_number(earliest_totals.get("totalPointsEarned")),
        days,
    )
    spending_rate = time_normalized_rate(
        as_number(latest_totals.get("totalPointsSpent")),
        as_number(earliest_totals.get("totalPointsSpent")),
        days,
    )

    initial_average = ratio(
        as_number(earliest_totals.get("totalBalance")),
        as_number(earliest_totals.get("totalActiveAccounts")),
    )
    current_average = ratio(
        as_number(latest_totals.get("totalBalance")),
        as_number(latest_totals.get("totalActiveAccounts")),
    )

    return {
        "pointsEarningRate": earning_rate,
        "pointsSpendingRate": spending_rate,
        "pointsVelocity": normalize(earning_rate - spending_rate),
        "economyBalance": percentage(
            as_number(latest_totals.get("totalPointsSpent")),
            as_number(latest_totals.get("totalPointsEarned")),
        ),
        "inflationRate": change_percentage(current_average, initial_average),
    }


#-----------------------------------------------------------------------------

SERIES_PERIODS = ("daily", "weekly", "monthly")

# Totals that count events inside a window; summed when grouped. Every other
# numeric total is a level and is averaged.
FLOW_TOTALS = frozenset({
    "newUsers",
    "newTasks",
    "completedTasks",
    "totalPointsEarned",
    "totalPointsSpent",
    "netPointsChange",
    "totalBadgesAwarded",
    "uniqueStudentsAwarded",
    "totalPointsFromBadges",
})


def bucket_start(at: datetime, period: str) -> date:
    """First day of the daily, ISO-weekly (Monday) or monthly bucket holding `at`."""
    day = at.date()
    if period == "daily":
        return day
    if period == "weekly":
        return day - timedelta(days=day.weekday())
    if period == "monthly":
        return day.replace(day=1)
    raise ValueError(f"unknown period '{period}'")


def group_series(
    points: Iterable[Tuple[datetime, Mapping[str, Any]]],
    period: str,
) -> List[Dict[str, Any]]:
    """
    Group (window start, totals) points into period buckets, oldest first

    Flow totals are summed and level totals averaged over the points in a
    bucket. Non-numeric values are skipped.
    """
    buckets: Dict[date, List[Mapping[str, Any]]] = {}
    for at, totals in points:
        buckets.setdefault(bucket_start(at, period), []).append(totals)

    series = []
    for start in sorted(buckets):
        members = buckets[start]
        sums: Dict[str, float] = {}
        counts: Dict[str, int] = {}
        for totals in members:
            for name, value in totals.items():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                sums[name] = sums.get(name, 0) + as_number(value)
                counts[name] = counts.get(name, 0) + 1

        grouped = {
            name: normalize(total) if name in FLOW_TOTALS else ratio(total, counts[name])
            for name, total in sums.items()
        }
        series.append({"date": start.isoformat(), "snapshots": len(members), "totals": grouped})

    return series
