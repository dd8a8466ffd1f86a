"""
Materialized permission views kept in Redis.

Two views are maintained per (scope, subject):

* ``user_effective_roles``: the subject's assigned roles and their
  closure over the parent relation;
* ``user_effective_permissions``: every permission reachable from the
  assigned roles.

Views are recomputed from the repository on a schedule or on demand.
Reads never block on a refresh: a stale view keeps being served until
the next successful refresh replaces it. Rows invalidated while a refresh
is computing are not written back by that refresh; the refresh that
follows picks up the new state.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis

from accessgate.core.logging import get_logger
from accessgate.modules.access.rbac import RbacResolver
from accessgate.modules.access.repository import AccessConfigRepository

logger = get_logger(__name__)

VIEW_EFFECTIVE_ROLES = "user_effective_roles"
VIEW_EFFECTIVE_PERMISSIONS = "user_effective_permissions"
VIEWS: tuple[str, ...] = (VIEW_EFFECTIVE_ROLES, VIEW_EFFECTIVE_PERMISSIONS)


def view_key(view: str, scope_id: str, subject_id: str) -> str:
    return f"mv:{view}:{scope_id}:{subject_id}"


def meta_key(view: str) -> str:
    return f"mv:meta:{view}"


class UnknownViewError(ValueError):
    """Raised when refreshing a view name that is not maintained."""


class MaterializedViewRefresher:
    """Recomputes and serves the permission views."""

    def __init__(
        self,
        redis_client: redis.Redis | None,
        repository: AccessConfigRepository,
        *,
        threshold_seconds: int = 3600,
        interval_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._repository = repository
        self.threshold_seconds = threshold_seconds
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._refresh_task: asyncio.Task[None] | None = None
        self._rerun = False
        # key -> generation at which it was last invalidated
        self._generation = 0
        self._invalidated: dict[str, int] = {}
        self._active_refreshes: list[int] = []

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _compute(self, view: str) -> dict[str, Any]:
        """Build ``{key: payload}`` for every (scope, subject) of a view."""
        rows: dict[str, Any] = {}
        for scope_id in await self._repository.list_scopes():
            resolver = RbacResolver(await self._repository.load_rbac_config(scope_id))
            assigned: dict[str, list[str]] = defaultdict(list)
            for assignment in await self._repository.list_assignments(scope_id):
                assigned[assignment.subject_id].append(assignment.role_name)

            for subject_id, roles in assigned.items():
                if view == VIEW_EFFECTIVE_ROLES:
                    payload: Any = {"assigned": roles, "effective": resolver.effective_roles(roles)}
                else:
                    permissions: dict[str, None] = {}
                    for role_name in roles:
                        for permission in resolver.effective_permissions(role_name):
                            permissions.setdefault(permission, None)
                    payload = list(permissions)
                rows[view_key(view, scope_id, subject_id)] = payload
        return rows

    async def refresh_view(self, view: str) -> int:
        """Recompute one view; raises on repository or store failure."""
        if view not in VIEWS:
            raise UnknownViewError(f"Unknown view {view!r}")
        r = self._redis
        if r is None:
            logger.warning("view_store_unavailable", view=view)
            return 0

        started = self._clock()
        generation = self._generation
        self._active_refreshes.append(generation)
        try:
            return await self._write_view(r, view, generation, started)
        finally:
            self._active_refreshes.remove(generation)
            self._prune_invalidations()

    async def _write_view(self, r: redis.Redis, view: str, generation: int, started: float) -> int:
        rows = await self._compute(view)

        stale = [key async for key in r.scan_iter(match=f"mv:{view}:*") if key not in rows]
        superseded = [key for key in rows if self._invalidated.get(key, 0) > generation]
        for key in superseded:
            del rows[key]
        stale.extend(superseded)
        if superseded:
            self._rerun = True
        pipe = r.pipeline(transaction=True)
        for key, payload in rows.items():
            pipe.set(key, json.dumps(payload))
        if stale:
            pipe.delete(*stale)
        pipe.set(
            meta_key(view),
            json.dumps(
                {
                    "last_refreshed": self._clock(),
                    "rows": len(rows),
                    "duration_ms": round((self._clock() - started) * 1000, 3),
                }
            ),
        )
        await pipe.execute()
        logger.info(
            "view_refreshed",
            view=view,
            rows=len(rows),
            removed=len(stale),
            superseded=len(superseded),
        )
        return len(rows)

    def _prune_invalidations(self) -> None:
        if not self._active_refreshes:
            self._invalidated.clear()
            return
        oldest = min(self._active_refreshes)
        self._invalidated = {key: gen for key, gen in self._invalidated.items() if gen > oldest}

    async def refresh_all(self) -> dict[str, bool]:
        """Refresh every view; a failing view is logged and left for the next tick."""
        self._rerun = False
        results: dict[str, bool] = {}
        for view in VIEWS:
            try:
                await self.refresh_view(view)
                results[view] = True
            except Exception as exc:  # noqa: BLE001
                logger.warning("view_refresh_failed", view=view, error=str(exc))
                results[view] = False
        return results

    def schedule_refresh(self) -> None:
        """Schedule a refresh of all views; a request made mid-refresh runs one more pass."""
        if self._refresh_task and not self._refresh_task.done():
            self._rerun = True
            return
        loop = asyncio.get_running_loop()
        self._refresh_task = loop.create_task(self._refresh_in_background())

    async def _refresh_in_background(self) -> None:
        await self.refresh_all()
        while self._rerun:
            await self.refresh_all()

    async def wait_for_refresh(self) -> None:
        if self._refresh_task is not None:
            await self._refresh_task

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    async def _read_meta(self, view: str) -> dict[str, Any] | None:
        r = self._redis
        if r is None:
            raise ConnectionError("view store unavailable")
        raw = await r.get(meta_key(view))
        return json.loads(raw) if raw else None

    async def get_view_stats(self) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        now = self._clock()
        for view in VIEWS:
            try:
                meta = await self._read_meta(view)
            except Exception:  # noqa: BLE001
                logger.warning("view_stats_redis_error", view=view)
                stats[view] = {"error": "Failed to get stats"}
                continue
            if meta is None:
                stats[view] = {"rows": 0, "last_refreshed": None, "age_seconds": None}
                continue
            stats[view] = {
                "rows": meta.get("rows", 0),
                "last_refreshed": meta.get("last_refreshed"),
                "age_seconds": now - float(meta["last_refreshed"]),
            }
        return stats

    async def needs_refresh(self, view: str | None = None) -> bool:
        """True when a view was never refreshed, is older than the threshold, or its state is unknown."""
        views = (view,) if view is not None else VIEWS
        stats = await self.get_view_stats()
        for name in views:
            entry = stats.get(name, {})
            age = entry.get("age_seconds")
            if "error" in entry or age is None or age > self.threshold_seconds:
                return True
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read_row(self, view: str, scope_id: str, subject_id: str) -> Any | None:
        r = self._redis
        if r is None:
            return None
        try:
            raw = await r.get(view_key(view, scope_id, subject_id))
        except Exception:  # noqa: BLE001
            logger.warning("view_redis_error", view=view, scope_id=scope_id)
            return None
        return json.loads(raw) if raw else None

    async def get_subject_roles(self, subject_id: str, scope_id: str) -> list[str] | None:
        """Roles assigned to the subject, or ``None`` when the view has no row."""
        row = await self._read_row(VIEW_EFFECTIVE_ROLES, scope_id, subject_id)
        return list(row["assigned"]) if row else None

    async def get_subject_effective_roles(self, subject_id: str, scope_id: str) -> list[str] | None:
        row = await self._read_row(VIEW_EFFECTIVE_ROLES, scope_id, subject_id)
        return list(row["effective"]) if row else None

    async def get_subject_permissions(self, subject_id: str, scope_id: str) -> list[str] | None:
        row = await self._read_row(VIEW_EFFECTIVE_PERMISSIONS, scope_id, subject_id)
        return list(row) if row is not None else None

    async def invalidate_subject(self, subject_id: str, scope_id: str) -> None:
        """Drop a subject's rows so reads fall back to the repository until the next refresh."""
        self._generation += 1
        keys = [view_key(view, scope_id, subject_id) for view in VIEWS]
        for key in keys:
            self._invalidated[key] = self._generation
        r = self._redis
        if r is None:
            return
        try:
            await r.delete(*keys)
        except Exception:  # noqa: BLE001
            logger.warning("view_redis_error", operation="invalidate_subject", scope_id=scope_id)

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event | None = None, *, max_cycles: int = 0) -> None:
        """Refresh stale views every ``interval_seconds`` until ``stop_event`` is set."""
        stop = stop_event or asyncio.Event()
        cycle = 0
        logger.info("view_refresher_started", interval_seconds=self.interval_seconds)
        try:
            while not stop.is_set():
                cycle += 1
                if self._rerun or await self.needs_refresh():
                    await self.refresh_all()

                if max_cycles > 0 and cycle >= max_cycles:
                    break

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
        finally:
            if self._refresh_task and not self._refresh_task.done():
                self._refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._refresh_task
            logger.info("view_refresher_stopped", cycles=cycle)
