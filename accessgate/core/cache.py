"""
Redis-backed decision and configuration cache.

Entries are JSON envelopes carrying their own expiry in addition to the
Redis TTL, so that a clock-controlled test or a replica lagging behind
never serves an entry past its lifetime. Every store error is treated as
a miss; the cache never decides access on its own.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis

from accessgate.core.logging import get_logger

logger = get_logger(__name__)

GLOBAL_SCOPE = "_global"
KEY_PREFIX = "authz"


def rbac_key(scope_id: str) -> str:
    return f"{KEY_PREFIX}:rbac:{scope_id}"


def abac_key(scope_id: str) -> str:
    return f"{KEY_PREFIX}:abac:{scope_id}"


def policies_key(scope_id: str | None) -> str:
    return f"{KEY_PREFIX}:policies:{scope_id or GLOBAL_SCOPE}"


def subject_roles_key(scope_id: str, subject_id: str) -> str:
    return f"{KEY_PREFIX}:subject:{scope_id}:{subject_id}"


def decision_key(scope_id: str, subject_id: str, fingerprint: str) -> str:
    return f"{KEY_PREFIX}:decision:{scope_id}:{subject_id}:{fingerprint}"


def fingerprint(payload: Any) -> str:
    """Stable digest of a JSON-compatible payload."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()[:32]


class DecisionCache:
    """TTL cache for configuration snapshots and prior decisions."""

    def __init__(
        self,
        redis_client: redis.Redis | None,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def get(self, key: str) -> Any | None:
        r = self._redis
        if r is None:
            return None
        try:
            raw = await r.get(key)
        except Exception:
            logger.warning("decision_cache_redis_error", operation="get", key=key)
            return None
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning("decision_cache_corrupt_entry", key=key)
            return None
        if float(envelope.get("expires_at", 0)) <= self._clock():
            return None
        return envelope.get("value")

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        r = self._redis
        if r is None:
            return
        ttl = ttl_seconds or self.ttl_seconds
        envelope = {"expires_at": self._clock() + ttl, "value": value}
        try:
            await r.set(key, json.dumps(envelope, default=str), ex=ttl)
        except Exception:
            logger.warning("decision_cache_redis_error", operation="set", key=key)

    async def delete(self, *keys: str) -> None:
        r = self._redis
        if r is None or not keys:
            return
        try:
            await r.delete(*keys)
        except Exception:
            logger.warning("decision_cache_redis_error", operation="delete", keys=list(keys))

    async def delete_pattern(self, pattern: str) -> int:
        r = self._redis
        if r is None:
            return 0
        removed = 0
        try:
            batch: list[str] = []
            async for key in r.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += int(await r.delete(*batch))
                    batch = []
            if batch:
                removed += int(await r.delete(*batch))
        except Exception:
            logger.warning("decision_cache_redis_error", operation="delete_pattern", pattern=pattern)
        return removed

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate_scope(self, scope_id: str) -> None:
        """Drop every snapshot and decision cached for a scope."""
        await self.delete(rbac_key(scope_id), abac_key(scope_id), policies_key(scope_id))
        await self.delete_pattern(f"{KEY_PREFIX}:subject:{scope_id}:*")
        await self.delete_pattern(f"{KEY_PREFIX}:decision:{scope_id}:*")
        logger.debug("decision_cache_scope_invalidated", scope_id=scope_id)

    async def invalidate_subject(self, subject_id: str, scope_id: str) -> None:
        await self.delete(subject_roles_key(scope_id, subject_id))
        await self.delete_pattern(f"{KEY_PREFIX}:decision:{scope_id}:{subject_id}:*")
        logger.debug("decision_cache_subject_invalidated", subject_id=subject_id, scope_id=scope_id)

    async def invalidate_policies(self, scope_id: str | None) -> None:
        """Drop policy snapshots and decisions; a global policy affects every scope."""
        if scope_id is None:
            await self.delete_pattern(f"{KEY_PREFIX}:policies:*")
            await self.delete_pattern(f"{KEY_PREFIX}:decision:*")
        else:
            await self.delete(policies_key(scope_id))
            await self.delete_pattern(f"{KEY_PREFIX}:decision:{scope_id}:*")
        logger.debug("decision_cache_policies_invalidated", scope_id=scope_id)
