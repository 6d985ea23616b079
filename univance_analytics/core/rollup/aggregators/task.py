from typing import Any, Dict, Mapping, Optional

from ..arithmetic import as_number, completion_rate, normalize, with_defaults
from ..models import MetricFamily
from ..sources import TASK_CREATOR_ROLES, TASK_DIFFICULTIES, breakdown_values
from .base import Summary, count_value

TASK_STATUSES = ("pending", "completed", "approved", "rejected", "expired")


class TaskAggregator:
    family = MetricFamily.TASK

    def summarize(self, values: Mapping[str, Any], tenant: bool = False) -> Summary:
        total = normalize(count_value(values, "totalTasks"))
        # Approved tasks are completed tasks a reviewer has signed off.
        completed = normalize(count_value(values, "completedTasks") + count_value(values, "approvedTasks"))

        if tenant:
            return Summary(totals={"totalTasks": total, "completedTasks": completed})

        by_status = {
            status: normalize(count_value(values, f"{status}Tasks"))
            for status in TASK_STATUSES
        }

        return Summary(
            totals={
                "totalTasks": total,
                "newTasks": normalize(count_value(values, "newTasks")),
                "completedTasks": completed,
                "pendingTasks": by_status["pending"],
                "approvedTasks": by_status["approved"],
                "rejectedTasks": by_status["rejected"],
                "expiredTasks": by_status["expired"],
            },
            breakdowns={
                "tasksByStatus": by_status,
                "tasksByCategory": self._counts(values, "tasksByCategory"),
                "tasksByCreatorRole": with_defaults(self._counts(values, "tasksByCreatorRole"), TASK_CREATOR_ROLES),
                "tasksByDifficulty": with_defaults(self._counts(values, "tasksByDifficulty"), TASK_DIFFICULTIES),
            },
        )

    def derive(
        self,
        totals: Mapping[str, float],
        previous_totals: Optional[Mapping[str, float]] = None,
        days: float = 0,
        tenant: bool = False,
    ) -> Dict[str, Optional[float]]:
        derived: Dict[str, Optional[float]] = {
            "completionRate": completion_rate(totals.get("completedTasks", 0), totals.get("totalTasks", 0)),
        }
        if not tenant:
            # No upstream source reports completion durations yet.
            derived["averageCompletionTime"] = None
        return derived

    @staticmethod
    def _counts(values: Mapping[str, Any], name: str) -> Dict[str, float]:
        return {item: normalize(as_number(value)) for item, value in breakdown_values(values, name).items()}
