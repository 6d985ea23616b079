from typing import Any, Dict, Mapping, Optional

from ..arithmetic import normalize, percentage, ratio
from ..models import MetricFamily
from .base import Summary, count_value

# Roles always present in the breakdown, zero when not reported.
USER_ROLES = ("students", "parents", "teachers", "school_admin", "social_worker", "platform_admin")

_ROLE_SOURCES = {
    "students": "students",
    "parents": "parents",
    "teachers": "teachers",
    "school_admin": "schoolAdmins",
}


class UserAggregator:
    family = MetricFamily.USER

    def summarize(self, values: Mapping[str, Any], tenant: bool = False) -> Summary:
        roles = {role: 0 for role in USER_ROLES}
        for role, source_key in _ROLE_SOURCES.items():
            roles[role] = normalize(count_value(values, source_key))

        if tenant:
            return Summary(
                totals={
                    "totalUsers": normalize(sum(roles.values())),
                    "totalStudents": roles["students"],
                    "totalTeachers": roles["teachers"],
                    "totalAdmins": roles["school_admin"],
                },
                breakdowns={"usersByRole": roles},
            )

        return Summary(
            totals={
                "totalUsers": normalize(count_value(values, "totalUsers")),
                "activeUsers": normalize(count_value(values, "activeUsers")),
                "newUsers": normalize(count_value(values, "newUsers")),
            },
            breakdowns={"usersByRole": roles},
        )

    def derive(
        self,
        totals: Mapping[str, float],
        previous_totals: Optional[Mapping[str, float]] = None,
        days: float = 0,
        tenant: bool = False,
    ) -> Dict[str, Optional[float]]:
        if tenant:
            return {
                "studentsPerTeacher": ratio(totals.get("totalStudents", 0), totals.get("totalTeachers", 0)),
            }

        total = totals.get("totalUsers", 0)
        return {
            "activeUserRate": percentage(totals.get("activeUsers", 0), total),
            "newUserRate": percentage(totals.get("newUsers", 0), total),
        }
