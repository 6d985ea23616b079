"""Tests for univance_analytics.core.rollup.upstream."""

import jwt
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from univance_analytics.core.rollup import ConfigurationError, SystemTokenIssuer, UpstreamClient, UpstreamError
from univance_analytics.core.rollup.collector import UpstreamCollectorFactory


@pytest.fixture
async def task_service():
    seen = {}

    async def tasks(request):
        seen["authorization"] = request.headers.get("Authorization")
        seen["query"] = dict(request.query)
        return web.json_response({"success": True, "data": {"total": 42}})

    async def broken(request):
        return web.Response(status=503, text="maintenance")

    async def garbage(request):
        return web.Response(status=200, text="<html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/api/tasks", tasks)
    app.router.add_get("/api/broken", broken)
    app.router.add_get("/api/garbage", garbage)

    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/"), seen
    finally:
        await server.close()


class TestUpstreamClient:
    async def test_get_json_sends_token_and_params(self, task_service):
        base_url, seen = task_service

        async with UpstreamClient({"task": base_url}, token="abc") as client:
            body = await client.get_json("task", "/api/tasks", {"status": "completed", "count": "true"})

        assert body == {"success": True, "data": {"total": 42}}
        assert seen["authorization"] == "Bearer abc"
        assert seen["query"] == {"status": "completed", "count": "true"}

    async def test_non_200_raises(self, task_service):
        base_url, _ = task_service

        async with UpstreamClient({"task": base_url}, token="abc") as client:
            with pytest.raises(UpstreamError) as info:
                await client.get_json("task", "/api/broken")

        assert info.value.status == 503

    async def test_invalid_json_raises(self, task_service):
        base_url, _ = task_service

        async with UpstreamClient({"task": base_url}, token="abc") as client:
            with pytest.raises(UpstreamError):
                await client.get_json("task", "/api/garbage")

    async def test_unknown_service(self):
        async with UpstreamClient({"task": "http://localhost:1"}, token="abc") as client:
            with pytest.raises(UpstreamError):
                await client.get_json("points", "/api/points/accounts")

    async def test_requires_context(self):
        with pytest.raises(RuntimeError):
            await UpstreamClient({}, token="abc").get_json("task", "/api/tasks")


class TestSystemTokenIssuer:
    async def test_claims(self):
        token = await SystemTokenIssuer("shared-secret").issue()

        claims = jwt.decode(token, "shared-secret", algorithms=["HS256"])
        assert claims["sub"] == "system_analytics"
        assert claims["roles"] == ["platform_admin"]
        assert claims["exp"] - claims["iat"] == 3600

    async def test_each_token_is_unique(self):
        issuer = SystemTokenIssuer("shared-secret")
        assert await issuer.issue() != await issuer.issue()

    async def test_missing_secret(self):
        with pytest.raises(ConfigurationError):
            await SystemTokenIssuer("").issue()


class TestCollectorFactory:
    async def test_issues_token_once_per_run(self, task_service):
        base_url, seen = task_service
        issued = []

        class CountingIssuer:
            async def issue(self):
                issued.append(1)
                return "run-token"

        factory = UpstreamCollectorFactory({"task": base_url}, CountingIssuer(), source_timeout=2)

        async with factory() as collector:
            client = collector.client
            assert await client.get_json("task", "/api/tasks") == {"success": True, "data": {"total": 42}}
            await client.get_json("task", "/api/tasks")

        assert len(issued) == 1
        assert seen["authorization"] == "Bearer run-token"
