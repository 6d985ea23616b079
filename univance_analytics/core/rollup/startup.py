"""
Wires the rollup scheduler from configuration
"""

import logging

import redis.asyncio

from ...utils.config import AnalyticsConfig, Config
from ..distributed_lock import RollupLockManager
from .collector import UpstreamCollectorFactory
from .service import RollupScheduler
from .sources import build_catalog
from .store import MemoryRollupStore, PgRollupStore, RollupStoreProtocol
from .upstream import SystemTokenIssuer

# Seconds a distributed lock outlives the run budget.
LOCK_TTL_MARGIN = 60

#-----------------------------------------------------------------------------

def create_store(config: Config) -> RollupStoreProtocol:
    if config.get_postgresql().configured:
        logging.info("[Startup] Rollup store: PostgreSQL")
        return PgRollupStore()

    logging.warning("[Startup] PostgreSQL not configured, snapshots are kept in memory only")
    return MemoryRollupStore()


def create_rollup_scheduler(
    analytics: AnalyticsConfig,
    store: RollupStoreProtocol,
    redis_client: redis.asyncio.Redis | None = None,
) -> RollupScheduler:
    collector_factory = UpstreamCollectorFactory(
        base_urls           = analytics.service_urls,
        token_issuer        = SystemTokenIssuer(analytics.jwt_secret),
        source_timeout      = analytics.source_timeout,
        tenant_concurrency  = analytics.tenant_concurrency,
        catalog             = build_catalog(analytics.required_sources),
    )

    lock_manager = RollupLockManager(
        redis_client        = redis_client,
        lock_ttl_seconds    = int(analytics.run_budget) + LOCK_TTL_MARGIN,
    )
    if redis_client is None:
        logging.warning("[Startup] Redis not configured, rollup locks are in-process only")

    rollup = RollupScheduler(
        store               = store,
        collector_factory   = collector_factory,
        lock_manager        = lock_manager,
        lookback_hours      = analytics.lookback_hours,
        run_budget          = analytics.run_budget,
        tick_seconds        = analytics.tick_seconds,
    )
    rollup.schedule_recurring(analytics.refresh_interval)

    return rollup

#-----------------------------------------------------------------------------
