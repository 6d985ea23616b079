"""
Base protocol for family aggregators

Each metric family turns raw collector values into totals, breakdowns and
rankings, then derives ratios from those totals. The same code serves the
global scope and individual tenants.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..arithmetic import as_number
from ..models import MetricFamily


@dataclass
class Summary:
    totals: Dict[str, float] = field(default_factory=dict)
    breakdowns: Dict[str, Dict[str, float]] = field(default_factory=dict)
    rankings: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)


class FamilyAggregatorProtocol(Protocol):
    """
    Protocol for family aggregators

    `summarize` must be a pure function of its input, and `derive` a pure
    function of the totals plus, for rate-of-change fields, the previous
    totals and the days between the two windows.
    """

    family: MetricFamily

    def summarize(self, values: Mapping[str, Any], tenant: bool = False) -> Summary:
        ...

    def derive(
        self,
        totals: Mapping[str, float],
        previous_totals: Optional[Mapping[str, float]] = None,
        days: float = 0,
        tenant: bool = False,
    ) -> Dict[str, Optional[float]]:
        ...


def count_value(values: Mapping[str, Any], key: str) -> float:
    """A count source, 0 when the source failed or was never fetched."""
    return as_number(values.get(key))


def list_value(values: Mapping[str, Any], key: str) -> List[Any]:
    value = values.get(key)
    return value if isinstance(value, list) else []
