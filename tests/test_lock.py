"""Tests for univance_analytics.core.distributed_lock."""

from unittest.mock import AsyncMock

from univance_analytics.core.distributed_lock import RollupLockManager


class FakeRedis:
    def __init__(self):
        self.data = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        self.data.pop(key, None)

    async def ttl(self, key):
        return 300 if key in self.data else -2


class TestLocalClaims:
    async def test_all_or_nothing(self):
        locks = RollupLockManager()

        first = await locks.try_acquire([("task", "global")])
        assert first is not None

        assert await locks.try_acquire([("user", "global"), ("task", "global")]) is None
        assert not locks.is_claimed(("user", "global"))

        await locks.release([("task", "global")], first)
        assert await locks.try_acquire([("user", "global"), ("task", "global")]) is not None

    async def test_release_requires_owner(self):
        locks = RollupLockManager()
        owner = await locks.try_acquire([("task", "global")])

        await locks.release([("task", "global")], "someone-else")
        assert locks.is_claimed(("task", "global"))

        await locks.release([("task", "global")], owner)
        assert not locks.is_claimed(("task", "global"))

    async def test_scopes_are_independent(self):
        locks = RollupLockManager()
        assert await locks.try_acquire([("task", "global")])
        assert await locks.try_acquire([("task", "s1")])


class TestRedisClaims:
    async def test_other_instance_blocks(self):
        redis = FakeRedis()
        here = RollupLockManager(redis_client=redis)
        there = RollupLockManager(redis_client=redis)

        execution_id = await here.try_acquire([("task", "global"), ("user", "global")])
        assert execution_id is not None
        assert set(redis.data) == {"analytics_rollup_lock:task:global", "analytics_rollup_lock:user:global"}

        assert await there.try_acquire([("user", "global")]) is None
        assert not there.is_claimed(("user", "global"))

        assert await here.release([("task", "global"), ("user", "global")], execution_id)
        assert redis.data == {}
        assert await there.try_acquire([("user", "global")]) is not None

    async def test_partial_redis_claim_is_rolled_back(self):
        redis = FakeRedis()
        redis.data["analytics_rollup_lock:user:global"] = "other:instance"
        locks = RollupLockManager(redis_client=redis)

        assert await locks.try_acquire([("task", "global"), ("user", "global")]) is None
        assert "analytics_rollup_lock:task:global" not in redis.data
        assert not locks.is_claimed(("task", "global"))

    async def test_release_keeps_foreign_lock(self):
        redis = FakeRedis()
        locks = RollupLockManager(redis_client=redis)
        execution_id = await locks.try_acquire([("task", "global")])
        redis.data["analytics_rollup_lock:task:global"] = "another:owner"

        assert await locks.release([("task", "global")], execution_id) is False
        assert redis.data["analytics_rollup_lock:task:global"] == "another:owner"

    async def test_redis_outage_falls_back_to_local(self, caplog):
        redis = AsyncMock()
        redis.set.side_effect = ConnectionError("redis down")
        redis.get.side_effect = ConnectionError("redis down")
        locks = RollupLockManager(redis_client=redis)

        execution_id = await locks.try_acquire([("task", "global")])

        assert execution_id is not None
        assert locks.is_claimed(("task", "global"))
        assert "continuing with in-process lock only" in caplog.text
        assert await locks.try_acquire([("task", "global")]) is None

    async def test_lock_status(self):
        redis = FakeRedis()
        locks = RollupLockManager(redis_client=redis)
        await locks.try_acquire([("badge", "global")])

        status = await locks.get_lock_status(("badge", "global"))

        assert status["claimed_locally"] is True
        assert status["ttl_seconds"] == 300
        assert locks.instance_id in status["redis_value"]
