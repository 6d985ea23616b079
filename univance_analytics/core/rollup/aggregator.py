"""
Aggregator

Turns collector output into one snapshot for the collected scope plus, for
the global scope, one child per known tenant. Pure: identical input yields
identical snapshots apart from the caller-supplied `created_at`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from .aggregators import BadgeAggregator, FamilyAggregatorProtocol, PointAggregator, TaskAggregator, UserAggregator
from .arithmetic import days_between
from .collector import CollectorResult
from .models import GLOBAL_SCOPE, MetricFamily, MetricSnapshot, ScopedChild, Tenant, TimeWindow


@dataclass
class AggregationOutput:
    snapshot: MetricSnapshot
    tenant_snapshots: List[MetricSnapshot] = field(default_factory=list)

    @property
    def all_snapshots(self) -> List[MetricSnapshot]:
        return [self.snapshot, *self.tenant_snapshots]


def default_aggregators() -> Dict[MetricFamily, FamilyAggregatorProtocol]:
    return {
        MetricFamily.USER: UserAggregator(),
        MetricFamily.TASK: TaskAggregator(),
        MetricFamily.POINT: PointAggregator(),
        MetricFamily.BADGE: BadgeAggregator(),
    }


class Aggregator:
    def __init__(self, aggregators: Optional[Mapping[MetricFamily, FamilyAggregatorProtocol]] = None):
        self.aggregators = dict(aggregators or default_aggregators())

    def aggregate(
        self,
        collected: CollectorResult,
        window: TimeWindow,
        tenants: Optional[List[Tenant]] = None,
        tenant_results: Optional[Mapping[str, CollectorResult]] = None,
        previous: Optional[MetricSnapshot] = None,
        created_at: Optional[datetime] = None,
        job_id: Optional[str] = None,
    ) -> AggregationOutput:
        """
        Build the snapshot for `collected.scope`

        `previous` is the latest stored snapshot of the same family and scope;
        rate-of-change fields compare against it, and each tenant compares
        against its matching child. A tenant without results gets an all-zero
        child.
        """
        family = collected.family
        aggregator = self.aggregators[family]
        scoped = collected.scope != GLOBAL_SCOPE

        previous = previous if previous is not None and previous.window.start < window.start else None
        days = days_between(window.end, previous.window.end) if previous is not None else 0

        summary = aggregator.summarize(collected.values, tenant=scoped)
        derived = aggregator.derive(
            summary.totals,
            previous.totals if previous is not None else None,
            days,
            tenant=scoped,
        )

        #-------------------------------------------------

        children: List[ScopedChild] = []
        if not scoped:
            tenant_results = tenant_results or {}
            for tenant in tenants or []:
                result = tenant_results.get(tenant.id) or CollectorResult(family=family, scope=tenant.id)
                child_summary = aggregator.summarize(result.values, tenant=True)

                previous_child = previous.child(tenant.id) if previous is not None else None
                child_derived = aggregator.derive(
                    child_summary.totals,
                    previous_child.totals if previous_child is not None else None,
                    days,
                    tenant=True,
                )

                children.append(ScopedChild(
                    tenant_id=tenant.id,
                    tenant_name=tenant.name,
                    totals=child_summary.totals,
                    breakdowns=child_summary.breakdowns,
                    derived=child_derived,
                ))

        snapshot = MetricSnapshot(
            scope=collected.scope,
            family=family,
            window=window,
            totals=summary.totals,
            breakdowns=summary.breakdowns,
            derived=derived,
            scoped_children=children,
            rankings=summary.rankings,
            created_at=created_at,
            job_id=job_id,
        )

        tenant_snapshots = [
            MetricSnapshot(
                scope=child.tenant_id,
                family=family,
                window=window,
                totals=child.totals,
                breakdowns=child.breakdowns,
                derived=child.derived,
                created_at=created_at,
                job_id=job_id,
            )
            for child in children
        ]

        return AggregationOutput(snapshot=snapshot, tenant_snapshots=tenant_snapshots)
