from typing import Any, Dict, Mapping, Optional

from ..arithmetic import as_number, change_percentage, normalize, percentage, ratio, time_normalized_rate, with_defaults
from ..models import MetricFamily
from .base import Summary, list_value

POINT_SOURCES = ("task", "attendance", "behavior", "badge", "manual_adjustment")
TRANSACTION_TYPES = ("earned", "spent", "adjusted")
DEFAULT_LEVEL = "1"


class PointAggregator:
    """
    Point economy arithmetic

    Amounts are taken as absolute values. Adjustments count toward earned
    when positive and toward spent otherwise.
    """

    family = MetricFamily.POINT

    def summarize(self, values: Mapping[str, Any], tenant: bool = False) -> Summary:
        earned = 0.0
        spent = 0.0
        by_type: Dict[str, float] = {}
        by_source: Dict[str, float] = {}

        for transaction in list_value(values, "transactions"):
            if not isinstance(transaction, Mapping):
                continue

            raw_amount = as_number(transaction.get("amount"))
            amount = abs(raw_amount)
            kind = str(transaction.get("type") or "unknown")
            by_type[kind] = by_type.get(kind, 0) + amount

            if kind == "earned":
                earned += amount
                source = str(transaction.get("source") or "unknown")
                by_source[source] = by_source.get(source, 0) + amount
            elif kind == "spent":
                spent += amount
            elif kind == "adjusted":
                if raw_amount > 0:
                    earned += amount
                else:
                    spent += amount

        accounts = [account for account in list_value(values, "accounts") if isinstance(account, Mapping)]
        total_balance = sum(as_number(account.get("currentBalance")) for account in accounts)

        levels: Dict[str, float] = {}
        for account in accounts:
            level = account.get("level")
            key = str(normalize(as_number(level))) if level not in (None, "") else DEFAULT_LEVEL
            if key == "0":
                key = DEFAULT_LEVEL
            levels[key] = levels.get(key, 0) + 1

        return Summary(
            totals={
                "totalPointsEarned": normalize(earned),
                "totalPointsSpent": normalize(spent),
                "netPointsChange": normalize(earned - spent),
                "totalActiveAccounts": len(accounts),
                "totalBalance": normalize(total_balance),
            },
            breakdowns={
                "pointsBySource": with_defaults(by_source, POINT_SOURCES),
                "pointsByTransactionType": with_defaults(by_type, TRANSACTION_TYPES),
                "levelDistribution": dict(sorted(levels.items(), key=lambda item: (len(item[0]), item[0]))),
            },
        )

    def derive(
        self,
        totals: Mapping[str, float],
        previous_totals: Optional[Mapping[str, float]] = None,
        days: float = 0,
        tenant: bool = False,
    ) -> Dict[str, Optional[float]]:
        earned = totals.get("totalPointsEarned", 0)
        spent = totals.get("totalPointsSpent", 0)
        average = ratio(totals.get("totalBalance", 0), totals.get("totalActiveAccounts", 0))

        derived: Dict[str, Optional[float]] = {
            "averagePointsPerAccount": average,
            "economyBalance": percentage(spent, earned),
            "pointsEarningRate": 0,
            "pointsSpendingRate": 0,
            "pointsVelocity": 0,
            "inflationRate": 0,
        }

        if previous_totals is not None:
            earning_rate = time_normalized_rate(earned, previous_totals.get("totalPointsEarned", 0), days)
            spending_rate = time_normalized_rate(spent, previous_totals.get("totalPointsSpent", 0), days)
            previous_average = ratio(
                previous_totals.get("totalBalance", 0),
                previous_totals.get("totalActiveAccounts", 0),
            )
            derived.update({
                "pointsEarningRate": earning_rate,
                "pointsSpendingRate": spending_rate,
                "pointsVelocity": normalize(earning_rate - spending_rate),
                "inflationRate": change_percentage(average, previous_average),
            })

        return derived
