"""Tests for the analytics router and the health endpoint."""

from datetime import timedelta
from functools import partial

import pytest
from fastapi.testclient import TestClient

from univance_analytics.core.rollup import MemoryRollupStore, TimeWindow
from univance_analytics.core.rollup.service import RollupScheduler
from univance_analytics.server import create_app
from tests.helpers import FakeClock, build_world, collector_factory, listing, total

SK = {"sk": "secret"}


def window_ending(clock, days=0):
    end = clock.now + timedelta(days=days)
    return TimeWindow(start=end - timedelta(hours=24), end=end)


@pytest.fixture
def world():
    return build_world()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rollup(world, clock):
    return RollupScheduler(
        store=MemoryRollupStore(),
        collector_factory=collector_factory(world, source_timeout=1.0),
        now_func=clock,
    )


@pytest.fixture
def client(rollup):
    with TestClient(create_app(rollup, manage_key="secret")) as client:
        yield client


class TestAuth:
    def test_missing_key(self, client):
        assert client.get("/api/analytics/jobs").status_code == 401

    def test_wrong_key(self, client):
        assert client.get("/api/analytics/jobs", params={"sk": "nope"}).status_code == 403

    def test_unconfigured_key(self, rollup):
        with TestClient(create_app(rollup, manage_key="")) as client:
            assert client.get("/api/analytics/jobs", params=SK).status_code == 500


class TestUpdate:
    def test_starts_job(self, client):
        response = client.post("/api/analytics/update", params=SK, json={"type": "task"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["job"]["status"] == "pending"
        assert body["data"]["job"]["jobType"] == "task"
        assert body["data"]["jobId"] == body["data"]["job"]["id"]

    def test_explicit_window(self, client):
        response = client.post("/api/analytics/update", params=SK, json={
            "type": "point",
            "startDate": "2024-02-01T00:00:00Z",
            "endDate": "2024-02-02T00:00:00Z",
            "scope": "s1",
        })

        assert response.status_code == 200
        job = response.json()["data"]["job"]
        assert job["windowStart"] == "2024-02-01T00:00:00+00:00"
        assert job["scope"] == "s1"

    @pytest.mark.parametrize("body", [
        {"type": "grades"},
        {"type": "task", "startDate": "yesterday"},
        {"type": "task", "startDate": "2024-02-02T00:00:00Z", "endDate": "2024-02-01T00:00:00Z"},
        {},
        {"type": 5},
        {"type": None},
        {"type": "task", "scope": 7},
        {"type": "task", "startDate": 20240101},
    ])
    def test_invalid_request(self, client, body):
        response = client.post("/api/analytics/update", params=SK, json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "ConfigurationError"

    def test_conflict(self, client, rollup):
        client.portal.call(rollup.lock_manager.try_acquire, [("task", "global")])

        response = client.post("/api/analytics/update", params=SK, json={"type": "full"})

        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

        jobs = client.get("/api/analytics/jobs", params=SK).json()["data"]
        assert jobs == []


class TestReads:
    def test_jobs(self, client, rollup):
        job = client.portal.call(rollup.trigger_run, "task")

        listed = client.get("/api/analytics/jobs", params=SK).json()["data"]
        assert [item["id"] for item in listed] == [job.id]

        found = client.get(f"/api/analytics/jobs/{job.id}", params=SK)
        assert found.status_code == 200
        assert found.json()["data"]["status"] == "completed"

        assert client.get("/api/analytics/jobs/unknown", params=SK).status_code == 404

    def test_latest_snapshot(self, client, rollup):
        client.portal.call(rollup.trigger_run, "task")

        response = client.get("/api/analytics/snapshots/task/latest", params=SK)

        assert response.status_code == 200
        assert response.json()["data"]["derived"]["completionRate"] == 60
        assert response.json()["data"]["derived"]["averageCompletionTime"] is None

        tenant = client.get("/api/analytics/snapshots/task/latest", params={**SK, "scope": "s1"})
        assert tenant.json()["data"]["totals"]["totalTasks"] == 40

        assert client.get("/api/analytics/snapshots/badge/latest", params=SK).status_code == 404
        assert client.get("/api/analytics/snapshots/grades/latest", params=SK).status_code == 400

    def test_snapshot_as_of(self, client, rollup, clock):
        client.portal.call(partial(rollup.trigger_run, "user", window=window_ending(clock)))
        start = window_ending(clock).start

        found = client.get("/api/analytics/snapshots/user/as-of", params={**SK, "date": start.isoformat()})
        assert found.status_code == 200

        earlier = (start - timedelta(minutes=1)).isoformat()
        missing = client.get("/api/analytics/snapshots/user/as-of", params={**SK, "date": earlier})
        assert missing.status_code == 404

    def test_dashboard_change(self, client, rollup, world, clock):
        world.add("task", "/api/tasks", total(80))
        client.portal.call(partial(rollup.trigger_run, "task", window=window_ending(clock, days=-7)))
        world.add("task", "/api/tasks", total(100))
        client.portal.call(partial(rollup.trigger_run, "task", window=window_ending(clock)))

        data = client.get("/api/analytics/dashboard", params=SK).json()["data"]

        task = data["families"]["task"]
        assert task["totals"]["totalTasks"] == 100
        assert task["change"]["totalTasks"] == 25

        badge = data["families"]["badge"]
        assert badge["totals"]["totalBadgesAwarded"] == 0
        assert badge["change"]["totalBadgesAwarded"] == 0

        assert len(data["recentJobs"]) == 2

    def test_economy_health(self, client, rollup, world, clock):
        world.add("points", "/api/points/transactions", {"data": {"transactions": [{"amount": 1000, "type": "earned"}]}})
        client.portal.call(partial(rollup.trigger_run, "point", window=window_ending(clock, days=-5)))
        world.add("points", "/api/points/transactions", {"data": {"transactions": [{"amount": 1500, "type": "earned"}]}})
        client.portal.call(partial(rollup.trigger_run, "point", window=window_ending(clock)))

        params = {
            **SK,
            "startDate": (clock.now - timedelta(days=10)).isoformat(),
            "endDate": clock.now.isoformat(),
        }
        data = client.get("/api/analytics/points/economy-health", params=params).json()["data"]

        assert data["snapshots"] == 2
        assert data["health"]["pointsEarningRate"] == 100

    def test_economy_health_empty_range(self, client):
        data = client.get("/api/analytics/points/economy-health", params=SK).json()["data"]

        assert data["snapshots"] == 0
        assert set(data["health"].values()) == {0}

    def test_snapshot_series(self, client, rollup, world, clock):
        world.add("task", "/api/tasks", total(80))
        client.portal.call(partial(rollup.trigger_run, "task", window=window_ending(clock, days=-1)))
        world.add("task", "/api/tasks", total(100))
        client.portal.call(partial(rollup.trigger_run, "task", window=window_ending(clock)))

        params = {**SK, "startDate": (clock.now - timedelta(days=10)).isoformat(), "endDate": clock.now.isoformat()}

        daily = client.get("/api/analytics/snapshots/task", params={**params, "period": "daily"}).json()["data"]
        assert [point["date"] for point in daily["series"]] == ["2024-02-28", "2024-02-29"]
        assert daily["series"][1]["totals"]["totalTasks"] == 100

        weekly = client.get("/api/analytics/snapshots/task", params={**params, "period": "weekly"}).json()["data"]
        assert [point["date"] for point in weekly["series"]] == ["2024-02-26"]

        monthly = client.get("/api/analytics/snapshots/task", params=params).json()["data"]
        assert monthly["period"] == "monthly"
        bucket = monthly["series"][0]
        assert bucket["date"] == "2024-02-01"
        assert bucket["snapshots"] == 2
        assert bucket["totals"]["totalTasks"] == 90
        assert bucket["totals"]["completedTasks"] == 120

    def test_snapshot_series_invalid(self, client):
        response = client.get("/api/analytics/snapshots/task", params={**SK, "period": "hourly"})
        assert response.status_code == 400
        assert response.json()["error"] == "ConfigurationError"

        assert client.get("/api/analytics/snapshots/grades", params=SK).status_code == 400

        empty = client.get("/api/analytics/snapshots/user", params=SK).json()["data"]
        assert empty["series"] == []

    def test_school_ranking(self, client, rollup, world):
        world.add("user", "/api/schools", listing([
            {"_id": "s1", "name": "North High"},
            {"_id": "s2", "name": "South High"},
        ]))
        world.add("task", "/api/tasks", total(70), schoolId="s2")
        client.portal.call(rollup.trigger_run, "task")

        data = client.get("/api/analytics/schools/task", params=SK).json()["data"]

        assert data["sortBy"] == "totalTasks"
        assert [school["tenantId"] for school in data["schools"]] == ["s2", "s1"]
        assert data["schools"][0]["totals"]["totalTasks"] == 70

        limited = client.get("/api/analytics/schools/task", params={**SK, "limit": 1}).json()["data"]
        assert [school["tenantId"] for school in limited["schools"]] == ["s2"]

    def test_school_ranking_without_snapshot(self, client):
        assert client.get("/api/analytics/schools/badge", params=SK).status_code == 404
        assert client.get("/api/analytics/schools/grades", params=SK).status_code == 400


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["redis"] == "not configured"
        assert body["rollup"]["store"] == "ok"

    def test_health_reports_snapshots_and_jobs(self, client, rollup):
        job = client.portal.call(rollup.trigger_run, "task")

        rollup_status = client.get("/api/health").json()["rollup"]

        assert rollup_status["snapshots"]["task"] >= 1
        assert rollup_status["snapshots"]["point"] == 0
        assert [item["id"] for item in rollup_status["recent_jobs"]] == [job.id]
