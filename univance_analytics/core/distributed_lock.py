"""
Distributed processing lock for rollup jobs
"""

import logging, uuid
import redis.asyncio

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

#-----------------------------------------------------------------------------

LockKey = Tuple[str, str]  # (family, scope)

#-----------------------------------------------------------------------------

class RollupLockManager:
    """
    Claims (family, scope) pairs for one rollup execution

    Guarantees at most one processing job per pair:
    - an in-process claim table covers concurrent triggers in this instance
    - Redis `SET NX` covers other instances when a client is configured
    - locks expire after `lock_ttl_seconds` so a crashed instance cannot hold them
    """

    def __init__(
        self,
        redis_client: redis.asyncio.Redis | None = None,
        lock_ttl_seconds: int = 300,
        key_prefix: str = "analytics_rollup_lock"
    ):
        self.redis_client = redis_client
        self.lock_ttl_seconds = max(1, int(lock_ttl_seconds))
        self.key_prefix = key_prefix
        self.instance_id = str(uuid.uuid4())[:8]

        self._local_claims: Dict[str, str] = {}

    def _get_lock_key(self, key: LockKey) -> str:
        family, scope = key
        return f"{self.key_prefix}:{family}:{scope}"

    def _get_lock_value(self, execution_id: str) -> str:
        timestamp = datetime.now().isoformat()
        return f"{self.instance_id}:{timestamp}:{execution_id}"

    #-----------------------------------------------------

    async def try_acquire(self, keys: Iterable[LockKey]) -> Optional[str]:
        """
        Claim every key or none of them

        Returns:
            execution_id if all keys were claimed, None if any is held
        """
        lock_keys = sorted({self._get_lock_key(key) for key in keys})
        execution_id = str(uuid.uuid4())

        held = [lock_key for lock_key in lock_keys if lock_key in self._local_claims]
        if held:
            logging.info(f"[RollupLock] Held in this instance: {', '.join(held)}")
            return None

        for lock_key in lock_keys:
            self._local_claims[lock_key] = execution_id

        acquired: List[str] = []
        if self.redis_client is not None:
            lock_value = self._get_lock_value(execution_id)
            try:
                for lock_key in lock_keys:
                    ok = await self.redis_client.set(lock_key, lock_value, ex=self.lock_ttl_seconds, nx=True)
                    if not ok:
                        existing = await self.redis_client.get(lock_key)
                        logging.info(f"[RollupLock] {lock_key} held by another instance: {existing}")
                        await self._release_redis(acquired, execution_id)
                        self._release_local(lock_keys, execution_id)
                        return None
                    acquired.append(lock_key)

            except Exception as e:
                # Redis outage: the in-process claim still stands.
                logging.error(f"[RollupLock] Redis error, continuing with in-process lock only: {str(e)}")
                await self._release_redis(acquired, execution_id)

        logging.info(
            f"[RollupLock] Acquired {', '.join(lock_keys)} "
            f"(instance: {self.instance_id}, execution: {execution_id})"
        )
        return execution_id

    async def release(self, keys: Iterable[LockKey], execution_id: str) -> bool:
        lock_keys = sorted({self._get_lock_key(key) for key in keys})
        self._release_local(lock_keys, execution_id)
        return await self._release_redis(lock_keys, execution_id)

    def is_claimed(self, key: LockKey) -> bool:
        return self._get_lock_key(key) in self._local_claims

    async def get_lock_status(self, key: LockKey) -> Dict:
        lock_key = self._get_lock_key(key)
        status = {
            "lock_key": lock_key,
            "claimed_locally": lock_key in self._local_claims,
            "instance_id": self.instance_id,
        }

        if self.redis_client is not None:
            try:
                value = await self.redis_client.get(lock_key)
                ttl = await self.redis_client.ttl(lock_key)
                status.update({"redis_value": value, "ttl_seconds": ttl if ttl and ttl > 0 else None})
            except Exception as e:
                status["redis_error"] = str(e)

        return status

    #-----------------------------------------------------

    def _release_local(self, lock_keys: Iterable[str], execution_id: str):
        for lock_key in lock_keys:
            if self._local_claims.get(lock_key) == execution_id:
                del self._local_claims[lock_key]

    async def _release_redis(self, lock_keys: Iterable[str], execution_id: str) -> bool:
        if self.redis_client is None:
            return True

        released = True
        for lock_key in lock_keys:
            try:
                current = await self.redis_client.get(lock_key)
                if current is None:
                    continue

                current_str = current.decode() if isinstance(current, bytes) else current
                if execution_id in current_str and self.instance_id in current_str:
                    await self.redis_client.delete(lock_key)
                else:
                    logging.warning(
                        f"[RollupLock] Ownership mismatch for {lock_key}, "
                        f"expected execution: {execution_id}, current: {current_str}"
                    )
                    released = False

            except Exception as e:
                logging.error(f"[RollupLock] Error releasing {lock_key}: {str(e)}")
                released = False

        return released

#-----------------------------------------------------------------------------
