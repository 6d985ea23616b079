"""Shared fakes for the rollup tests."""

import asyncio
import copy
import inspect
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from univance_analytics.core.rollup.collector import Collector
from univance_analytics.core.rollup.upstream import UpstreamError

ANY = object()

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeUpstreamClient:
    """
    Routes `get_json` calls to canned responses.

    A route matches when its service and path are equal and every `match`
    parameter is present with that value (ANY accepts any value). The most
    specific match wins; among equals, the route added last. A response may be
    a body, an exception instance to raise, or a callable taking the params.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, service: str, path: str, response, **match):
        self.routes.append((service, path, match, response))
        return self

    async def get_json(self, service, path, params=None):
        params = dict(params or {})
        self.calls.append((service, path, params))

        best = None
        for index, (route_service, route_path, match, response) in enumerate(self.routes):
            if route_service != service or route_path != path:
                continue
            if not all(key in params and (value is ANY or params[key] == value) for key, value in match.items()):
                continue
            rank = (len(match), index)
            if best is None or rank > best[0]:
                best = (rank, response)

        if best is None:
            raise UpstreamError(f"no route for {service}{path}", status=404)

        response = best[1]
        if callable(response):
            response = response(params)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, BaseException):
            raise response
        return copy.deepcopy(response)

    def calls_to(self, path: str):
        return [call for call in self.calls if call[1] == path]


async def hang(params):
    await asyncio.sleep(3600)


def total(n):
    return {"success": True, "data": {"total": n}}


def listing(items):
    return {"success": True, "data": items}


def collector_factory(client, **kwargs):
    @asynccontextmanager
    async def factory():
        yield Collector(client, **kwargs)
    return factory


def build_world() -> FakeUpstreamClient:
    """One school, 10 users, 100 tasks of which 60 completed, a small point economy and two badges."""
    client = FakeUpstreamClient()

    client.add("user", "/api/schools", listing([{"_id": "s1", "name": "North High"}]))

    client.add("user", "/api/users", total(10))
    client.add("user", "/api/users", total(1), roles="school_admin")
    client.add("user", "/api/users", total(2), createdAtGte=ANY)
    client.add("user", "/api/users/active", total(5))
    client.add("user", "/api/students", total(6))
    client.add("user", "/api/parents", total(2))
    client.add("user", "/api/teachers", {"total": 2})

    client.add("task", "/api/tasks", total(100))
    client.add("task", "/api/tasks", total(60), status="completed")
    client.add("task", "/api/tasks", total(0), status="approved")
    client.add("task", "/api/tasks", total(30), status="pending")
    client.add("task", "/api/tasks", total(5), status="rejected")
    client.add("task", "/api/tasks", total(5), status="expired")
    client.add("task", "/api/tasks", total(20), status="approved,completed", schoolId=ANY)
    client.add("task", "/api/tasks", total(40), schoolId=ANY)
    client.add("task", "/api/tasks", total(10), category="c1")
    client.add("task", "/api/tasks/categories", listing([{"_id": "c1", "name": "homework"}]))

    client.add("points", "/api/points/transactions", {"data": {"transactions": [
        {"amount": 1000, "type": "earned", "source": "task"},
        {"amount": -200, "type": "spent"},
    ]}})
    client.add("points", "/api/points/accounts", listing([
        {"currentBalance": 500, "level": 2},
        {"currentBalance": 300, "level": 0},
    ]))

    client.add("user", "/api/badges/awards", listing([
        {"badgeId": "b1", "studentId": "u1", "pointsAwarded": 10},
        {"badgeId": "b1", "studentId": "u2", "pointsAwarded": 10},
        {"badgeId": "b2", "studentId": "u1", "pointsAwarded": 5},
    ]))
    client.add("user", "/api/badges", listing([
        {"_id": "b1", "name": "Early Bird", "category": "attendance", "issuerType": "system",
         "conditions": {"type": "attendance_streak"}},
        {"_id": "b2", "name": "Helper", "issuerType": "school"},
    ]))

    return client
