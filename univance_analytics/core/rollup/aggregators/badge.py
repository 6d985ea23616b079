from typing import Any, Dict, List, Mapping, Optional

from ..arithmetic import as_number, normalize, ratio, with_defaults
from ..models import MetricFamily
from .base import Summary, list_value

CONDITION_TYPES = ("points_threshold", "task_completion", "attendance_streak", "custom")
ISSUER_TYPES = ("system", "school", "parent")
TOP_BADGES = 10
UNKNOWN_BADGE = "Unknown Badge"


class BadgeAggregator:
    family = MetricFamily.BADGE

    def summarize(self, values: Mapping[str, Any], tenant: bool = False) -> Summary:
        awards = [award for award in list_value(values, "awards") if isinstance(award, Mapping)]

        students = {str(award["studentId"]) for award in awards if award.get("studentId") not in (None, "")}
        points = sum(as_number(award.get("pointsAwarded")) for award in awards)

        awards_by_badge: Dict[str, float] = {}
        for award in awards:
            badge_id = str(award.get("badgeId") or "unknown")
            awards_by_badge[badge_id] = awards_by_badge.get(badge_id, 0) + 1

        totals = {
            "totalBadgesAwarded": len(awards),
            "uniqueStudentsAwarded": len(students),
            "totalPointsFromBadges": normalize(points),
        }

        if tenant:
            return Summary(totals=totals, breakdowns={"awardsByBadge": awards_by_badge})

        #-------------------------------------------------

        badges = [badge for badge in list_value(values, "badges") if isinstance(badge, Mapping)]
        totals["totalBadges"] = len(badges)

        by_category: Dict[str, float] = {}
        by_condition: Dict[str, float] = {}
        by_issuer: Dict[str, float] = {}
        names: Dict[str, str] = {}

        for badge in badges:
            badge_id = badge.get("_id") or badge.get("id")
            if badge_id:
                names[str(badge_id)] = str(badge.get("name") or UNKNOWN_BADGE)

            category = str(badge.get("category") or "uncategorized")
            by_category[category] = by_category.get(category, 0) + 1

            conditions = badge.get("conditions")
            if isinstance(conditions, Mapping) and conditions.get("type"):
                condition = str(conditions["type"])
                by_condition[condition] = by_condition.get(condition, 0) + 1

            if badge.get("issuerType"):
                issuer = str(badge["issuerType"])
                by_issuer[issuer] = by_issuer.get(issuer, 0) + 1

        return Summary(
            totals=totals,
            breakdowns={
                "badgesByCategory": by_category,
                "badgesByConditionType": with_defaults(by_condition, CONDITION_TYPES),
                "badgesByIssuerType": with_defaults(by_issuer, ISSUER_TYPES),
                "awardsByBadge": awards_by_badge,
            },
            rankings={"mostAwardedBadges": self._most_awarded(awards_by_badge, names)},
        )

    def derive(
        self,
        totals: Mapping[str, float],
        previous_totals: Optional[Mapping[str, float]] = None,
        days: float = 0,
        tenant: bool = False,
    ) -> Dict[str, Optional[float]]:
        return {
            "averageBadgesPerStudent": ratio(
                totals.get("totalBadgesAwarded", 0),
                totals.get("uniqueStudentsAwarded", 0),
            ),
        }

    @staticmethod
    def _most_awarded(counts: Mapping[str, float], names: Mapping[str, str]) -> List[Dict[str, Any]]:
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:TOP_BADGES]
        return [
            {"badgeId": badge_id, "badgeName": names.get(badge_id, UNKNOWN_BADGE), "count": normalize(count)}
            for badge_id, count in ranked
        ]
