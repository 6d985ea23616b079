"""Tests for univance_analytics.core.rollup.aggregator and the family aggregators."""

from datetime import timedelta

from univance_analytics.core.rollup import Aggregator, CollectorResult, MetricFamily, Tenant, TimeWindow
from tests.helpers import T0

WINDOW = TimeWindow(start=T0 - timedelta(hours=24), end=T0)
TENANTS = [Tenant(id="s1", name="North High"), Tenant(id="s2", name="South High")]


def task_result(scope="global", **values):
    return CollectorResult(family=MetricFamily.TASK, scope=scope, values=values)


def point_result(transactions, accounts=()):
    return CollectorResult(
        family=MetricFamily.POINT,
        values={"transactions": list(transactions), "accounts": list(accounts)},
    )


class TestAggregator:
    def test_deterministic_apart_from_created_at(self):
        collected = task_result(totalTasks=100, completedTasks=60)
        tenant_results = {"s1": task_result("s1", totalTasks=40, completedTasks=20)}

        first = Aggregator().aggregate(collected, WINDOW, TENANTS, tenant_results, created_at=T0)
        second = Aggregator().aggregate(collected, WINDOW, TENANTS, tenant_results, created_at=T0 + timedelta(seconds=5))

        assert first.snapshot.to_dict() | {"createdAt": None} == second.snapshot.to_dict() | {"createdAt": None}

    def test_completion_rate(self):
        output = Aggregator().aggregate(task_result(totalTasks=100, completedTasks=60), WINDOW)

        assert output.snapshot.derived["completionRate"] == 60
        assert output.snapshot.derived["averageCompletionTime"] is None

    def test_approved_tasks_count_as_completed(self):
        output = Aggregator().aggregate(task_result(totalTasks=10, completedTasks=3, approvedTasks=2), WINDOW)

        assert output.snapshot.totals["completedTasks"] == 5
        assert output.snapshot.derived["completionRate"] == 50

    def test_zero_tasks_never_divides(self):
        output = Aggregator().aggregate(task_result(), WINDOW)
        assert output.snapshot.derived["completionRate"] == 0

    def test_children_and_tenant_snapshots(self):
        collected = task_result(totalTasks=100, completedTasks=60)
        tenant_results = {"s1": task_result("s1", totalTasks=40, completedTasks=20)}

        output = Aggregator().aggregate(collected, WINDOW, TENANTS, tenant_results, job_id="job-1")

        north = output.snapshot.child("s1")
        south = output.snapshot.child("s2")
        assert north.tenant_name == "North High"
        assert north.derived == {"completionRate": 50}
        assert south.totals == {"totalTasks": 0, "completedTasks": 0}

        assert [snapshot.scope for snapshot in output.tenant_snapshots] == ["s1", "s2"]
        assert output.tenant_snapshots[0].totals == north.totals
        assert all(snapshot.job_id == "job-1" for snapshot in output.all_snapshots)

    def test_scoped_collection_has_no_children(self):
        output = Aggregator().aggregate(task_result("s1", totalTasks=4, completedTasks=1), WINDOW, TENANTS)

        assert output.snapshot.scope == "s1"
        assert output.snapshot.scoped_children == []
        assert output.tenant_snapshots == []
        assert "averageCompletionTime" not in output.snapshot.derived

    def test_unknown_task_categories_are_retained(self):
        collected = task_result(totalTasks=5, **{"tasksByCategory:field trip": 3, "tasksByDifficulty:legendary": 1})

        breakdowns = Aggregator().aggregate(collected, WINDOW).snapshot.breakdowns

        assert breakdowns["tasksByCategory"] == {"field trip": 3}
        assert breakdowns["tasksByDifficulty"]["legendary"] == 1
        assert breakdowns["tasksByDifficulty"]["easy"] == 0


class TestPointAggregator:
    def test_totals_and_breakdowns(self):
        collected = point_result(
            [
                {"amount": 100, "type": "earned", "source": "task"},
                {"amount": 30, "type": "earned", "source": "field_trip"},
                {"amount": -40, "type": "spent"},
                {"amount": 10, "type": "adjusted"},
                {"amount": -5, "type": "adjusted"},
            ],
            [{"currentBalance": 60, "level": 3}, {"currentBalance": 40}],
        )

        snapshot = Aggregator().aggregate(collected, WINDOW).snapshot

        assert snapshot.totals["totalPointsEarned"] == 140
        assert snapshot.totals["totalPointsSpent"] == 45
        assert snapshot.totals["netPointsChange"] == 95
        assert snapshot.breakdowns["pointsBySource"]["field_trip"] == 30
        assert snapshot.breakdowns["pointsBySource"]["badge"] == 0
        assert snapshot.breakdowns["pointsByTransactionType"] == {"earned": 130, "spent": 40, "adjusted": 15}
        assert snapshot.breakdowns["levelDistribution"] == {"1": 1, "3": 1}
        assert snapshot.derived["averagePointsPerAccount"] == 50

    def test_rates_need_a_previous_snapshot(self):
        first = Aggregator().aggregate(point_result([{"amount": 1000, "type": "earned"}]), WINDOW).snapshot

        assert first.derived["pointsEarningRate"] == 0
        assert first.derived["inflationRate"] == 0

        later = TimeWindow(start=WINDOW.start + timedelta(days=5), end=WINDOW.end + timedelta(days=5))
        second = Aggregator().aggregate(
            point_result([{"amount": 1500, "type": "earned"}]), later, previous=first
        ).snapshot

        assert second.derived["pointsEarningRate"] == 100

    def test_previous_not_older_is_ignored(self):
        first = Aggregator().aggregate(point_result([{"amount": 1000, "type": "earned"}]), WINDOW).snapshot

        again = Aggregator().aggregate(point_result([{"amount": 1500, "type": "earned"}]), WINDOW, previous=first)

        assert again.snapshot.derived["pointsEarningRate"] == 0


class TestBadgeAggregator:
    def test_rankings(self):
        awards = [{"badgeId": "b2", "studentId": "u1"}] * 2 + [{"badgeId": "b1", "studentId": "u2"}] * 2 + [
            {"badgeId": "b3", "studentId": "u3", "pointsAwarded": 5}
        ]
        badges = [{"_id": "b1", "name": "Early Bird"}, {"_id": "b2", "name": "Helper", "category": "social"}]
        collected = CollectorResult(family=MetricFamily.BADGE, values={"awards": awards, "badges": badges})

        snapshot = Aggregator().aggregate(collected, WINDOW).snapshot

        assert snapshot.rankings["mostAwardedBadges"] == [
            {"badgeId": "b1", "badgeName": "Early Bird", "count": 2},
            {"badgeId": "b2", "badgeName": "Helper", "count": 2},
            {"badgeId": "b3", "badgeName": "Unknown Badge", "count": 1},
        ]
        assert snapshot.breakdowns["badgesByCategory"] == {"uncategorized": 1, "social": 1}
        assert snapshot.totals["uniqueStudentsAwarded"] == 3
        assert snapshot.derived["averageBadgesPerStudent"] == 5 / 3


class TestUserAggregator:
    def test_tenant_totals_sum_roles(self):
        tenant_results = {"s1": CollectorResult(
            family=MetricFamily.USER, scope="s1",
            values={"students": 20, "teachers": 4, "schoolAdmins": 1},
        )}
        collected = CollectorResult(family=MetricFamily.USER, values={"totalUsers": 50, "activeUsers": 25})

        snapshot = Aggregator().aggregate(collected, WINDOW, TENANTS[:1], tenant_results).snapshot

        assert snapshot.derived["activeUserRate"] == 50
        north = snapshot.child("s1")
        assert north.totals["totalUsers"] == 25
        assert north.derived["studentsPerTeacher"] == 5
