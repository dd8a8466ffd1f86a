"""
Pytest fixtures for the decision engine.
Provides in-memory Redis, repository and audit store doubles plus a
fully wired engine.
"""

from __future__ import annotations

import fnmatch
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from accessgate.core.audit import AuditLogEntry, AuditLogPipeline
from accessgate.core.cache import DecisionCache
from accessgate.core.config import Settings, get_settings
from accessgate.core.rate_limit import RateLimiter
from accessgate.modules.access.admin import AccessAdminService
from accessgate.modules.access.engine import AccessControlEngine
from accessgate.modules.access.schemas import (
    AbacConfig,
    AbacRule,
    AccessRequest,
    EnvironmentAttributes,
    Policy,
    RbacConfig,
    ResourceAttributes,
    RoleAssignment,
    RoleDefinition,
    SubjectAttributes,
)
from accessgate.modules.views.refresher import MaterializedViewRefresher

# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Redis
# =============================================================================


class FakePipeline:
    def __init__(self, redis_client: FakeRedis) -> None:
        self._redis = redis_client
        self._calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def __getattr__(self, name: str) -> Any:
        def queue(*args: Any, **kwargs: Any) -> FakePipeline:
            self._calls.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        self._redis.check()
        results = []
        for name, args, kwargs in self._calls:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._calls.clear()
        return results


class FakeRedis:
    """Subset of ``redis.asyncio.Redis`` backed by dicts."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def ping(self) -> bool:
        self.check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def get(self, key: str) -> Any:
        self.check()
        value = self.values.get(key)
        return value if isinstance(value, str) else None

    async def mget(self, *keys: str) -> list[Any]:
        self.check()
        return [self.values.get(key) for key in keys]

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool:
        self.check()
        if nx and key in self.values:
            return False
        self.values[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self.check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        self.check()
        return sum(1 for key in keys if key in self.values)

    async def incr(self, key: str) -> int:
        self.check()
        value = int(self.values.get(key, 0)) + 1
        self.values[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self.check()
        self.ttls[key] = seconds
        return key in self.values

    async def rpush(self, key: str, *items: str) -> int:
        self.check()
        bucket = self.values.setdefault(key, [])
        bucket.extend(items)
        return len(bucket)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self.check()
        bucket = self.values.get(key, [])
        return list(bucket[start:] if end == -1 else bucket[start : end + 1])

    async def llen(self, key: str) -> int:
        self.check()
        return len(self.values.get(key, []))

    async def lmove(self, source: str, destination: str, src: str = "LEFT", dest: str = "RIGHT") -> Any:
        self.check()
        bucket = self.values.get(source)
        if not bucket:
            return None
        item = bucket.pop(0) if src == "LEFT" else bucket.pop()
        if not bucket:
            del self.values[source]
        target = self.values.setdefault(destination, [])
        if dest == "RIGHT":
            target.append(item)
        else:
            target.insert(0, item)
        return item

    async def scan_iter(self, match: str | None = None, count: int | None = None) -> AsyncIterator[str]:
        self.check()
        for key in list(self.values):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


# =============================================================================
# Repository
# =============================================================================


class InMemoryAccessConfigRepository:
    """Dict-backed ``AccessConfigRepository``."""

    def __init__(self) -> None:
        self.rbac_enabled: dict[str, bool] = {}
        self.abac_enabled: dict[str, bool] = {}
        self.roles: dict[str, dict[str, RoleDefinition]] = {}
        self.rules: dict[str, list[AbacRule]] = {}
        self.policies: dict[str, Policy] = {}
        self.assignments: list[RoleAssignment] = []
        self.fail = False
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise ConnectionRefusedError("database unavailable")

    async def load_rbac_config(self, scope_id: str) -> RbacConfig:
        self._check("load_rbac_config")
        return RbacConfig(
            enabled=self.rbac_enabled.get(scope_id, True),
            roles={name: role.model_copy() for name, role in self.roles.get(scope_id, {}).items()},
        )

    async def load_abac_config(self, scope_id: str) -> AbacConfig:
        self._check("load_abac_config")
        return AbacConfig(
            enabled=self.abac_enabled.get(scope_id, False),
            rules=list(self.rules.get(scope_id, [])),
        )

    async def load_policies(self, scope_id: str | None) -> list[Policy]:
        self._check("load_policies")
        return [
            policy
            for policy in self.policies.values()
            if policy.active and policy.scope_id in (None, scope_id)
        ]

    async def get_subject_roles(self, subject_id: str, scope_id: str) -> list[str]:
        self._check("get_subject_roles")
        return [
            a.role_name
            for a in self.assignments
            if a.active and a.subject_id == subject_id and a.scope_id == scope_id
        ]

    async def list_scopes(self) -> list[str]:
        self._check("list_scopes")
        return sorted({a.scope_id for a in self.assignments if a.active})

    async def list_assignments(self, scope_id: str) -> list[RoleAssignment]:
        self._check("list_assignments")
        return [a for a in self.assignments if a.active and a.scope_id == scope_id]

    async def set_scope_settings(
        self,
        scope_id: str,
        *,
        rbac_enabled: bool | None = None,
        abac_enabled: bool | None = None,
    ) -> None:
        self._check("set_scope_settings")
        if rbac_enabled is not None:
            self.rbac_enabled[scope_id] = rbac_enabled
        if abac_enabled is not None:
            self.abac_enabled[scope_id] = abac_enabled

    async def save_role(self, scope_id: str, role: RoleDefinition) -> None:
        self._check("save_role")
        self.roles.setdefault(scope_id, {})[role.name] = role

    async def find_active_assignment(
        self, subject_id: str, role_name: str, scope_id: str
    ) -> RoleAssignment | None:
        self._check("find_active_assignment")
        for a in self.assignments:
            if a.active and (a.subject_id, a.role_name, a.scope_id) == (subject_id, role_name, scope_id):
                return a
        return None

    async def add_assignment(self, assignment: RoleAssignment) -> None:
        self._check("add_assignment")
        self.assignments.append(assignment)

    async def deactivate_assignment(
        self, subject_id: str, role_name: str, scope_id: str, removed_by: str
    ) -> bool:
        self._check("deactivate_assignment")
        for index, a in enumerate(self.assignments):
            if a.active and (a.subject_id, a.role_name, a.scope_id) == (subject_id, role_name, scope_id):
                self.assignments[index] = a.model_copy(
                    update={"active": False, "removed_by": removed_by, "removed_at": datetime.now(UTC)}
                )
                return True
        return False

    async def save_abac_rule(self, scope_id: str, rule: AbacRule) -> None:
        self._check("save_abac_rule")
        rules = [r for r in self.rules.get(scope_id, []) if r.name != rule.name]
        rules.append(rule)
        self.rules[scope_id] = rules

    async def deactivate_abac_rule(self, scope_id: str, name: str) -> bool:
        self._check("deactivate_abac_rule")
        rules = self.rules.get(scope_id, [])
        remaining = [r for r in rules if r.name != name]
        self.rules[scope_id] = remaining
        return len(remaining) != len(rules)

    async def save_policy(self, policy: Policy) -> None:
        self._check("save_policy")
        self.policies[policy.id] = policy

    async def get_policy(self, policy_id: str) -> Policy | None:
        self._check("get_policy")
        return self.policies.get(policy_id)

    async def list_policies(
        self,
        *,
        scope_id: str | None = None,
        name: str | None = None,
        version: str | None = None,
        created_by: str | None = None,
    ) -> list[Policy]:
        self._check("list_policies")
        return [
            p
            for p in self.policies.values()
            if p.active
            and (scope_id is None or p.scope_id == scope_id)
            and (name is None or p.name == name)
            and (version is None or p.version == version)
            and (created_by is None or p.metadata.created_by == created_by)
        ]

    async def deactivate_policy(self, policy_id: str, deleted_by: str) -> bool:
        self._check("deactivate_policy")
        policy = self.policies.get(policy_id)
        if policy is None or not policy.active:
            return False
        self.policies[policy_id] = policy.model_copy(update={"active": False})
        return True


# =============================================================================
# Audit store
# =============================================================================


class RecordingAuditStore:
    """Audit store keeping entries in memory, idempotent on request id."""

    def __init__(self) -> None:
        self.entries: dict[str, AuditLogEntry] = {}
        self.batches: list[list[str]] = []
        self.fail = False

    async def write_batch(self, entries: list[AuditLogEntry]) -> None:
        if self.fail:
            raise ConnectionRefusedError("audit store unavailable")
        self.batches.append([entry.request_id for entry in entries])
        for entry in entries:
            self.entries.setdefault(entry.request_id, entry)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="development", debug=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def repository() -> InMemoryAccessConfigRepository:
    return InMemoryAccessConfigRepository()


@pytest.fixture
def audit_store() -> RecordingAuditStore:
    return RecordingAuditStore()


@pytest.fixture
def cache(fake_redis: FakeRedis, clock: FakeClock) -> DecisionCache:
    return DecisionCache(fake_redis, ttl_seconds=300, clock=clock)


@pytest.fixture
def rate_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(FakeRedis(), threshold=50, window_seconds=300, clock=clock)


@pytest.fixture
def audit(fake_redis: FakeRedis, audit_store: RecordingAuditStore) -> AuditLogPipeline:
    return AuditLogPipeline(
        fake_redis,
        audit_store,
        batch_size=100,
        flush_interval_ms=50,
        queue_key="audit_logs:queue",
        worker_id="test-worker",
    )


@pytest.fixture
def views(
    fake_redis: FakeRedis, repository: InMemoryAccessConfigRepository, clock: FakeClock
) -> MaterializedViewRefresher:
    return MaterializedViewRefresher(
        fake_redis, repository, threshold_seconds=3600, interval_seconds=1, clock=clock
    )


@pytest.fixture
def engine(
    repository: InMemoryAccessConfigRepository,
    cache: DecisionCache,
    rate_limiter: RateLimiter,
    audit: AuditLogPipeline,
    settings: Settings,
) -> AccessControlEngine:
    return AccessControlEngine(
        repository,
        cache=cache,
        rate_limiter=rate_limiter,
        audit=audit,
        settings=settings,
    )


@pytest.fixture
def admin(
    repository: InMemoryAccessConfigRepository,
    cache: DecisionCache,
    audit: AuditLogPipeline,
    views: MaterializedViewRefresher,
) -> AccessAdminService:
    return AccessAdminService(repository, cache=cache, audit=audit, views=views)


def _make_request(
    *,
    subject_id: str = "user-1",
    roles: list[str] | None = None,
    action: str = "project:read",
    resource_id: str = "doc-1",
    resource_type: str = "document",
    scope_id: str = "project-1",
    subject_extra: dict[str, Any] | None = None,
    resource_extra: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
    context: dict[str, Any] | None = None,
) -> AccessRequest:
    """Build an ``AccessRequest`` with sensible defaults."""
    environment = EnvironmentAttributes(timestamp=timestamp) if timestamp else EnvironmentAttributes()
    return AccessRequest(
        subject=SubjectAttributes(
            id=subject_id,
            roles=roles or [],
            scope_id=scope_id,
            **(subject_extra or {}),
        ),
        resource=ResourceAttributes(
            type=resource_type,
            id=resource_id,
            scope_id=scope_id,
            **(resource_extra or {}),
        ),
        action=action,
        environment=environment,
        context=context or {},
    )


@pytest.fixture
def request_factory() -> Any:
    return _make_request
