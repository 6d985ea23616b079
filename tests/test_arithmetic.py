"""Tests for univance_analytics.core.rollup.arithmetic."""

import math
from datetime import date, timedelta

import pytest

from univance_analytics.core.rollup.arithmetic import (
    as_number,
    bucket_start,
    change_percentage,
    completion_rate,
    days_between,
    economy_health,
    group_series,
    percentage,
    ratio,
    time_normalized_rate,
    with_defaults,
)
from tests.helpers import T0


class TestRatios:
    def test_completion_rate_zero_total(self):
        assert completion_rate(5, 0) == 0

    def test_completion_rate(self):
        assert completion_rate(60, 100) == 60

    def test_ratio_never_infinite(self):
        assert ratio(1, 0) == 0
        assert math.isfinite(ratio(1e308, 1e-308))

    def test_percentage_returns_int_when_integral(self):
        result = percentage(1, 4)
        assert result == 25
        assert isinstance(result, int)

    def test_as_number_rejects_nan_and_garbage(self):
        assert as_number(float("nan")) == 0
        assert as_number("inf") == 0
        assert as_number("12.5") == 12.5
        assert as_number(None) == 0
        assert as_number({"total": 3}) == 0


class TestChange:
    def test_change_without_baseline(self):
        assert change_percentage(50, 0) == 0
        assert change_percentage(50, None) == 0

    def test_change(self):
        assert change_percentage(150, 100) == 50
        assert change_percentage(50, 100) == -50

    def test_time_normalized_rate_floors_days_at_one(self):
        assert time_normalized_rate(150, 100, 0.25) == 50

    def test_time_normalized_rate(self):
        assert time_normalized_rate(1500, 1000, 5) == 100

    def test_days_between(self):
        assert days_between(T0 + timedelta(days=5), T0) == 5
        assert days_between(T0, T0 + timedelta(hours=12)) == 0.5


class TestCounting:
    def test_with_defaults_keeps_unknown_keys(self):
        result = with_defaults({"task": 10, "field_trip": 4}, ["task", "badge"])
        assert result == {"task": 10, "badge": 0, "field_trip": 4}


class TestEconomyHealth:
    def test_rates_between_snapshots(self):
        earliest = {"totalPointsEarned": 1000, "totalPointsSpent": 100, "totalBalance": 900, "totalActiveAccounts": 3}
        latest = {"totalPointsEarned": 1500, "totalPointsSpent": 350, "totalBalance": 1600, "totalActiveAccounts": 4}

        health = economy_health(earliest, latest, T0, T0 + timedelta(days=5))

        assert health["pointsEarningRate"] == 100
        assert health["pointsSpendingRate"] == 50
        assert health["pointsVelocity"] == 50
        assert math.isclose(health["inflationRate"], 100 / 3)
        assert math.isclose(health["economyBalance"], 350 / 1500 * 100)

    def test_empty_range_is_all_zero(self):
        health = economy_health({}, {}, T0, T0)
        assert set(health.values()) == {0}


class TestSeries:
    @pytest.mark.parametrize("period, expected", [
        ("daily", date(2024, 3, 1)),
        ("weekly", date(2024, 2, 26)),
        ("monthly", date(2024, 3, 1)),
    ])
    def test_bucket_start(self, period, expected):
        assert bucket_start(T0, period) == expected

    def test_bucket_start_unknown_period(self):
        with pytest.raises(ValueError):
            bucket_start(T0, "hourly")

    def test_flows_summed_and_levels_averaged(self):
        points = [
            (T0 + timedelta(days=2), {"totalUsers": 12, "newUsers": 2, "note": "x"}),
            (T0, {"totalUsers": 10, "newUsers": 3}),
            (T0 + timedelta(days=31), {"totalUsers": 20, "newUsers": 1}),
        ]

        series = group_series(points, "monthly")

        assert series == [
            {"date": "2024-03-01", "snapshots": 2, "totals": {"totalUsers": 11, "newUsers": 5}},
            {"date": "2024-04-01", "snapshots": 1, "totals": {"totalUsers": 20, "newUsers": 1}},
        ]

    def test_empty(self):
        assert group_series([], "daily") == []
