"""
Redis-based fixed window rate limiting for access checks.

Counters are keyed by (subject, scope) and the current window index, so
every engine instance sharing the rate-limit Redis sees the same counts.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import redis.asyncio as redis

from accessgate.core.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Fixed window limiter: ``threshold`` checks per ``window_seconds``.

    Fails open if Redis is unavailable; rate limiting is defense-in-depth,
    not the decision itself.
    """

    def __init__(
        self,
        redis_client: redis.Redis | None,
        threshold: int = 50,
        window_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock

    def _window_key(self, subject_id: str, scope_id: str) -> str:
        window = int(self._clock()) // self.window_seconds
        return f"rl:authz:{subject_id}:{scope_id}:{window}"

    @staticmethod
    def _block_key(subject_id: str, scope_id: str) -> str:
        return f"rl:authz:block:{subject_id}:{scope_id}"

    async def is_rate_limited(self, subject_id: str, scope_id: str) -> bool:
        r = self._redis
        if r is None:
            return False
        try:
            count, blocked = await r.mget(
                self._window_key(subject_id, scope_id),
                self._block_key(subject_id, scope_id),
            )
        except Exception:
            logger.warning("rate_limit_redis_error", subject_id=subject_id, scope_id=scope_id)
            return False
        if blocked is not None:
            return True
        return count is not None and int(count) >= self.threshold

    async def increment_request_count(self, subject_id: str, scope_id: str) -> int | None:
        """Atomically count one request; returns the new count or ``None`` on store failure."""
        r = self._redis
        if r is None:
            return None
        key = self._window_key(subject_id, scope_id)
        try:
            pipe = r.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window_seconds)
            results: list[int | bool] = await pipe.execute()
        except Exception:
            logger.warning("rate_limit_redis_error", subject_id=subject_id, scope_id=scope_id)
            return None
        return int(results[0])

    async def admit(self, subject_id: str, scope_id: str) -> bool:
        """
        Count one request and decide on the count it produced.

        The increment and the block lookup share one pipeline, so concurrent
        callers can never all observe a count below the threshold. Rejected
        requests still count toward the window.
        """
        r = self._redis
        if r is None:
            return True
        key = self._window_key(subject_id, scope_id)
        try:
            pipe = r.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window_seconds)
            pipe.exists(self._block_key(subject_id, scope_id))
            count, _, blocked = await pipe.execute()
        except Exception:
            logger.warning("rate_limit_redis_error", subject_id=subject_id, scope_id=scope_id)
            return True
        return not blocked and int(count) <= self.threshold

    async def block_user(self, subject_id: str, scope_id: str) -> None:
        """Force the subject over the limit until the block expires or limits are reset."""
        r = self._redis
        if r is None:
            logger.warning("rate_limit_store_unavailable", operation="block_user")
            return
        try:
            await r.set(self._block_key(subject_id, scope_id), "1", ex=self.window_seconds)
        except Exception:
            logger.warning("rate_limit_redis_error", subject_id=subject_id, scope_id=scope_id)
            return
        logger.info("rate_limit_subject_blocked", subject_id=subject_id, scope_id=scope_id)

    async def reset_limits(self, subject_id: str, scope_id: str) -> None:
        r = self._redis
        if r is None:
            logger.warning("rate_limit_store_unavailable", operation="reset_limits")
            return
        try:
            await r.delete(
                self._window_key(subject_id, scope_id),
                self._block_key(subject_id, scope_id),
            )
        except Exception:
            logger.warning("rate_limit_redis_error", subject_id=subject_id, scope_id=scope_id)
