"""Tests for the server bootstrap helpers."""

import os

from fastapi.testclient import TestClient

from univance_analytics.core.rollup import MemoryRollupStore
from univance_analytics.core.rollup.service import RollupScheduler
from univance_analytics.server import create_app
from univance_analytics.server.server import split_sql_statements
from tests.helpers import FakeClock, build_world, collector_factory


def make_rollup():
    return RollupScheduler(
        store=MemoryRollupStore(),
        collector_factory=collector_factory(build_world()),
        now_func=FakeClock(),
    )


class TestCreateApp:
    def test_default_name(self):
        app = create_app(make_rollup(), manage_key="secret")

        assert app.title == "univance-analytics"
        with TestClient(app) as client:
            assert client.get("/api/health").json()["service"] == "univance-analytics"

    def test_configured_name_and_prefix(self):
        app = create_app(make_rollup(), server_name="analytics", server_version="1.2.0", uri_prefix="/edu")

        assert (app.title, app.version) == ("analytics", "1.2.0")
        with TestClient(app) as client:
            assert client.get("/edu/api/health").status_code == 200
            assert client.get("/edu/api/analytics/jobs").status_code == 401


class TestSqlFiles:
    def test_split_drops_comments(self):
        script = """
-- snapshots
CREATE TABLE a (id INT);

  -- jobs
CREATE INDEX a_idx ON a (id);
"""
        assert split_sql_statements(script) == ["CREATE TABLE a (id INT)", "CREATE INDEX a_idx ON a (id)"]

    def test_bundled_schema_parses(self):
        path = os.path.join(os.path.dirname(__file__), "..", "univance_analytics", "res", "sql", "01_analytics.sql")
        with open(path, "r", encoding="utf-8") as f:
            statements = split_sql_statements(f.read())

        assert any("analytics_metric_snapshots" in s and s.startswith("CREATE TABLE") for s in statements)
        assert any("WHERE status = 'processing'" in s for s in statements)
        assert not any(s.startswith("--") for s in statements)
