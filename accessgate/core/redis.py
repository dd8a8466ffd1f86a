"""
Shared Redis connections.

The decision cache, audit queue and materialized views use ``redis_url``;
rate-limit counters live in a separate database so cache eviction never
resets them.
"""

from __future__ import annotations

import inspect

import redis.asyncio as redis

from accessgate.core.config import get_settings
from accessgate.core.logging import get_logger

logger = get_logger(__name__)

_redis: redis.Redis | None = None
_rate_limit_redis: redis.Redis | None = None


def _get_rate_limit_redis_url() -> str:
    """Return the Redis URL for rate limiting (separate DB to avoid LRU eviction)."""
    settings = get_settings()
    if settings.redis_rate_limit_url:
        return str(settings.redis_rate_limit_url)
    base = str(settings.redis_url)
    if base.endswith("/0"):
        return base[:-1] + "1"
    return base


async def _connect(url: str) -> redis.Redis | None:
    settings = get_settings()
    try:
        client = redis.from_url(  # type: ignore[no-untyped-call]
            url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )
        ping_result = client.ping()
        if inspect.isawaitable(ping_result):
            await ping_result
    except Exception:
        logger.warning("redis_unavailable", url=url.split("@")[-1])
        return None
    return client


async def get_redis() -> redis.Redis | None:
    """Get or create the module-level Redis connection for cache, audit and views."""
    global _redis
    if _redis is None:
        _redis = await _connect(str(get_settings().redis_url))
    return _redis


async def get_rate_limit_redis() -> redis.Redis | None:
    """Get or create the module-level Redis connection for rate-limit counters."""
    global _rate_limit_redis
    if _rate_limit_redis is None:
        _rate_limit_redis = await _connect(_get_rate_limit_redis_url())
    return _rate_limit_redis


async def close_redis() -> None:
    """Close the Redis connections (call at shutdown)."""
    global _redis, _rate_limit_redis
    for client in (_redis, _rate_limit_redis):
        if client is not None:
            await client.aclose()
    _redis = None
    _rate_limit_redis = None
