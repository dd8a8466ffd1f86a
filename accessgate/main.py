"""
Runtime wiring for embedding the decision engine in a service.

``access_control_runtime()`` builds every component once, starts the
background audit batcher and view refresher, and tears everything down
on exit::

    async with access_control_runtime() as runtime:
        decision = await runtime.engine.check_access(request)
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from accessgate.core.audit import AuditLogPipeline, SqlAuditStore
from accessgate.core.cache import DecisionCache
from accessgate.core.config import Settings, get_settings
from accessgate.core.logging import configure_logging, get_logger
from accessgate.core.rate_limit import RateLimiter
from accessgate.core.redis import close_redis, get_rate_limit_redis, get_redis
from accessgate.db.session import close_db, init_db
from accessgate.modules.access.admin import AccessAdminService
from accessgate.modules.access.engine import AccessControlEngine
from accessgate.modules.access.repository import SqlAccessConfigRepository
from accessgate.modules.views.refresher import MaterializedViewRefresher

logger = get_logger(__name__)


@dataclass
class AccessControlRuntime:
    """Components shared by every caller in one process."""

    settings: Settings
    engine: AccessControlEngine
    admin: AccessAdminService
    cache: DecisionCache
    rate_limiter: RateLimiter
    audit: AuditLogPipeline
    views: MaterializedViewRefresher
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    background_tasks: list[asyncio.Task[None]] = field(default_factory=list)


async def build_runtime(settings: Settings | None = None) -> AccessControlRuntime:
    """Connect to the database and Redis and construct the components."""
    settings = settings or get_settings()

    session_factory = await init_db(settings)
    redis_client = await get_redis()
    rate_limit_redis = await get_rate_limit_redis()

    repository = SqlAccessConfigRepository(session_factory)
    cache = DecisionCache(redis_client, ttl_seconds=settings.authz_cache_ttl_seconds)
    rate_limiter = RateLimiter(
        rate_limit_redis,
        threshold=settings.authz_rate_limit_threshold,
        window_seconds=settings.authz_rate_limit_window_seconds,
    )
    audit = AuditLogPipeline(
        redis_client,
        SqlAuditStore(session_factory),
        batch_size=settings.audit_batch_size,
        flush_interval_ms=settings.audit_flush_interval_ms,
        queue_key=settings.audit_queue_key,
        worker_id=settings.audit_worker_id,
    )
    views = MaterializedViewRefresher(
        redis_client,
        repository,
        threshold_seconds=settings.view_refresh_threshold_seconds,
        interval_seconds=settings.view_refresh_interval_seconds,
    )
    engine = AccessControlEngine(
        repository,
        cache=cache,
        rate_limiter=rate_limiter,
        audit=audit,
        views=views,
        settings=settings,
    )
    admin = AccessAdminService(
        repository,
        cache=cache,
        audit=audit,
        views=views,
        condition_max_depth=settings.authz_condition_max_depth,
    )
    return AccessControlRuntime(
        settings=settings,
        engine=engine,
        admin=admin,
        cache=cache,
        rate_limiter=rate_limiter,
        audit=audit,
        views=views,
    )


async def shutdown_runtime(runtime: AccessControlRuntime) -> None:
    runtime.stop_event.set()
    for task in runtime.background_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    runtime.background_tasks.clear()
    await runtime.audit.drain_pending()
    await close_redis()
    await close_db()


@asynccontextmanager
async def access_control_runtime(
    settings: Settings | None = None,
    *,
    start_background: bool = True,
) -> AsyncGenerator[AccessControlRuntime, None]:
    """Build the runtime, optionally start its background loops, and clean up on exit."""
    configure_logging(settings)
    runtime = await build_runtime(settings)
    logger.info(
        "access_control_runtime_started",
        environment=runtime.settings.environment,
        version=runtime.settings.version,
    )
    if start_background:
        loop = asyncio.get_running_loop()
        runtime.background_tasks.append(loop.create_task(runtime.audit.run(runtime.stop_event)))
        runtime.background_tasks.append(loop.create_task(runtime.views.run(runtime.stop_event)))
    try:
        yield runtime
    finally:
        await shutdown_runtime(runtime)
        logger.info("access_control_runtime_stopped")
