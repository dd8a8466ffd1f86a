"""
End-to-end tests for AccessControlEngine.check_access and friends.
"""

import asyncio
from typing import Any

import pytest

from accessgate.core.config import Settings
from accessgate.core.rate_limit import RateLimiter
from accessgate.modules.access.engine import (
    REASON_ABAC_DENIED,
    REASON_ADMIN_BYPASS,
    REASON_BACKEND,
    REASON_CONFIGURATION,
    REASON_INVALID_REQUEST,
    REASON_NONE_GRANTED,
    REASON_RATE_LIMITED,
    REASON_RBAC_DENIED,
    AccessControlEngine,
)
from accessgate.modules.access.policy_engine import REASON_ALLOWED, REASON_DENIED
from accessgate.modules.access.schemas import (
    AbacRule,
    DecisionStage,
    Effect,
    Policy,
    PolicyStatement,
    RoleAssignment,
    RoleDefinition,
)

SCOPE = "project-1"


def _policy(policy_id: str, *statements: dict[str, Any], scope_id: str | None = None) -> Policy:
    return Policy(
        id=policy_id,
        name=policy_id,
        statements=[PolicyStatement.model_validate(s) for s in statements],
        scope_id=scope_id,
    )


ALLOW_ALL = {"effect": "allow", "actions": ["all:*"], "resources": ["*"]}
DENY_PROD_DELETE = {"effect": "deny", "actions": ["project:delete"], "resources": ["prod-*"]}


@pytest.fixture
def seeded(repository):
    repository.roles[SCOPE] = {
        r.name: r
        for r in (
            RoleDefinition(name="viewer", permissions=["api:read"]),
            RoleDefinition(name="admin", permissions=["all:*"]),
            RoleDefinition(name="developer", permissions=["project:read"]),
            RoleDefinition(name="manager", parent="developer", permissions=["project:delete"]),
        )
    }
    return repository


# =============================================================================
# Scenarios
# =============================================================================


@pytest.mark.asyncio
async def test_viewer_cannot_write(engine: AccessControlEngine, seeded, request_factory) -> None:
    decision = await engine.check_access(request_factory(roles=["viewer"], action="api:write"))

    assert not decision.allowed
    assert decision.reason == REASON_RBAC_DENIED
    assert decision.stage is DecisionStage.RBAC
    assert decision.effect is Effect.DENY


@pytest.mark.asyncio
async def test_admin_wildcard_bypasses_abac_and_policies(
    engine: AccessControlEngine, seeded, request_factory
) -> None:
    decision = await engine.check_access(request_factory(roles=["admin"], action="project:delete"))

    assert decision.allowed
    assert decision.reason == REASON_ADMIN_BYPASS
    assert decision.stage is DecisionStage.ADMIN_BYPASS


@pytest.mark.asyncio
async def test_admin_without_bypass_needs_policy(seeded, cache, request_factory) -> None:
    engine = AccessControlEngine(
        seeded,
        cache=cache,
        settings=Settings(authz_admin_wildcard_bypass=False),
    )
    request = request_factory(roles=["admin"], action="project:delete")

    denied = await engine.check_access(request)
    assert not denied.allowed
    assert denied.reason == REASON_DENIED

    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    await cache.invalidate_policies(None)
    allowed = await engine.check_access(request)
    assert allowed.allowed
    assert allowed.matched_policies == ["allow-all"]


@pytest.mark.asyncio
async def test_abac_environment_rule(engine: AccessControlEngine, seeded, request_factory) -> None:
    seeded.abac_enabled[SCOPE] = True
    seeded.rules[SCOPE] = [
        AbacRule(
            name="dev-only",
            conditions={"requiredRoles": ["developer", "admin"], "environment": "development"},
        )
    ]
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)

    allowed = await engine.check_access(
        request_factory(roles=["developer"], subject_extra={"environment": "development"})
    )
    denied = await engine.check_access(
        request_factory(roles=["developer"], subject_extra={"environment": "production"})
    )

    assert allowed.allowed
    assert allowed.reason == REASON_ALLOWED
    assert not denied.allowed
    assert denied.reason == REASON_ABAC_DENIED
    assert denied.stage is DecisionStage.ABAC


@pytest.mark.asyncio
async def test_abac_ignores_resource_attributes(engine: AccessControlEngine, seeded, request_factory) -> None:
    seeded.abac_enabled[SCOPE] = True
    seeded.rules[SCOPE] = [
        AbacRule(name="acme-devs", conditions={"requiredRoles": ["developer"], "organization": "acme"})
    ]
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)

    from_resource = await engine.check_access(
        request_factory(roles=["developer"], resource_extra={"organization": "acme"})
    )
    from_context = await engine.check_access(
        request_factory(roles=["developer"], context={"organization": "acme"})
    )

    assert not from_resource.allowed
    assert from_resource.stage is DecisionStage.ABAC
    assert from_context.allowed


@pytest.mark.asyncio
async def test_explicit_deny_on_prod_resources(
    engine: AccessControlEngine, seeded, request_factory
) -> None:
    seeded.policies["deny-prod"] = _policy("deny-prod", DENY_PROD_DELETE)
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)

    prod = await engine.check_access(
        request_factory(roles=["manager"], action="project:delete", resource_id="prod-42")
    )
    dev = await engine.check_access(
        request_factory(roles=["manager"], action="project:delete", resource_id="dev-42")
    )

    assert not prod.allowed
    assert prod.reason == REASON_DENIED
    assert prod.matched_policies == ["deny-prod"]
    assert dev.allowed
    assert dev.matched_policies == ["allow-all"]


# =============================================================================
# Roles from storage
# =============================================================================


@pytest.mark.asyncio
async def test_stored_assignments_grant_roles(
    engine: AccessControlEngine, seeded, request_factory
) -> None:
    seeded.assignments.append(
        RoleAssignment(subject_id="user-1", role_name="developer", scope_id=SCOPE, assigned_by="root")
    )
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)

    decision = await engine.check_access(request_factory(action="project:read"))

    assert decision.allowed


@pytest.mark.asyncio
async def test_has_permission_uses_stored_roles(engine: AccessControlEngine, seeded) -> None:
    seeded.assignments.append(
        RoleAssignment(subject_id="user-1", role_name="manager", scope_id=SCOPE, assigned_by="root")
    )

    assert await engine.has_permission("user-1", SCOPE, "project:read")
    assert not await engine.has_permission("user-1", SCOPE, "api:read")
    assert not await engine.has_permission("user-2", SCOPE, "project:read")


@pytest.mark.asyncio
async def test_has_permission_fails_closed_on_backend_error(engine: AccessControlEngine, seeded) -> None:
    seeded.fail = True
    assert not await engine.has_permission("user-1", SCOPE, "project:read")


@pytest.mark.asyncio
async def test_materialized_roles_are_served_while_stale(
    seeded, cache, views, settings, request_factory
) -> None:
    seeded.assignments.append(
        RoleAssignment(subject_id="user-1", role_name="developer", scope_id=SCOPE, assigned_by="root")
    )
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    await views.refresh_all()
    seeded.assignments.clear()
    engine = AccessControlEngine(seeded, cache=cache, views=views, settings=settings)

    decision = await engine.check_access(request_factory(action="project:read"))

    assert decision.allowed
    assert "get_subject_roles" not in seeded.calls


# =============================================================================
# Caching
# =============================================================================


@pytest.mark.asyncio
async def test_repeat_request_is_served_from_cache(
    engine: AccessControlEngine, seeded, request_factory
) -> None:
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    request = request_factory(roles=["developer"], action="project:read")

    first = await engine.check_access(request)
    calls = len(seeded.calls)
    second = await engine.check_access(request)

    assert first.allowed and not first.cached
    assert second.allowed and second.cached
    assert second.matched_policies == ["allow-all"]
    assert second.request_id != first.request_id
    assert len(seeded.calls) == calls


@pytest.mark.asyncio
async def test_cache_outage_recomputes(
    engine: AccessControlEngine, seeded, fake_redis, request_factory
) -> None:
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    fake_redis.fail = True

    decision = await engine.check_access(request_factory(roles=["developer"], action="project:read"))

    assert decision.allowed
    assert not decision.cached


@pytest.mark.asyncio
async def test_admin_write_invalidates_cached_decision(
    engine: AccessControlEngine, admin, seeded, request_factory
) -> None:
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    request = request_factory(roles=["manager"], action="project:delete", resource_id="prod-1")
    assert (await engine.check_access(request)).allowed

    await admin.create_policy(
        name="deny-prod",
        statements=[PolicyStatement.model_validate(DENY_PROD_DELETE)],
        actor="root",
        policy_id="deny-prod",
    )

    decision = await engine.check_access(request)
    assert not decision.allowed
    assert not decision.cached


# =============================================================================
# Failure handling
# =============================================================================


@pytest.mark.asyncio
async def test_rate_limited_subject_is_denied(
    engine: AccessControlEngine, seeded, rate_limiter: RateLimiter, request_factory
) -> None:
    rate_limiter.threshold = 2
    request = request_factory(roles=["viewer"], action="api:read")

    await engine.check_access(request)
    await engine.check_access(request)
    decision = await engine.check_access(request)

    assert not decision.allowed
    assert decision.reason == REASON_RATE_LIMITED
    assert decision.stage is DecisionStage.RATE_LIMIT


@pytest.mark.asyncio
async def test_concurrent_burst_admits_only_threshold(
    engine: AccessControlEngine, seeded, rate_limiter: RateLimiter, request_factory
) -> None:
    rate_limiter.threshold = 2
    request = request_factory(roles=["viewer"], action="api:read")

    decisions = await asyncio.gather(*(engine.check_access(request) for _ in range(5)))

    limited = [d for d in decisions if d.stage is DecisionStage.RATE_LIMIT]
    assert len(limited) == 3


@pytest.mark.asyncio
async def test_multi_action_check_counts_once_against_rate_limit(
    engine: AccessControlEngine, seeded, rate_limiter: RateLimiter, request_factory
) -> None:
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    rate_limiter.threshold = 2
    request = request_factory(roles=["admin"])

    batch = await engine.check_all(request, ["project:read", "project:delete", "api:write"])
    single = await engine.check_access(request)
    over = await engine.check_any(request, ["project:read"])

    assert batch.allowed
    assert single.allowed
    assert not over.allowed
    assert over.stage is DecisionStage.RATE_LIMIT


@pytest.mark.asyncio
async def test_invalid_attributes_are_denied(engine: AccessControlEngine, seeded, request_factory) -> None:
    bad_enum = await engine.check_access(
        request_factory(roles=["admin"], resource_extra={"sensitivity": "top-secret"})
    )
    bad_action = await engine.check_access(request_factory(roles=["admin"], action="delete"))

    for decision in (bad_enum, bad_action):
        assert not decision.allowed
        assert decision.reason == REASON_INVALID_REQUEST
        assert decision.stage is DecisionStage.VALIDATION


@pytest.mark.asyncio
async def test_malformed_stored_policy_denies_with_configuration_stage(
    engine: AccessControlEngine, seeded, request_factory
) -> None:
    broken = {
        **ALLOW_ALL,
        "conditions": [{"operator": "in", "attribute": "subject.organization", "value": "acme"}],
    }
    seeded.policies["broken"] = _policy("broken", broken)

    decision = await engine.check_access(
        request_factory(roles=["developer"], subject_extra={"organization": "acme"})
    )

    assert not decision.allowed
    assert decision.reason == REASON_CONFIGURATION
    assert decision.stage is DecisionStage.CONFIGURATION


@pytest.mark.asyncio
async def test_backend_outage_fails_closed(engine: AccessControlEngine, seeded, request_factory) -> None:
    seeded.fail = True

    decision = await engine.check_access(request_factory(roles=["admin"]))

    assert not decision.allowed
    assert decision.reason == REASON_BACKEND
    assert decision.stage is DecisionStage.BACKEND


# =============================================================================
# Multi-permission checks and audit
# =============================================================================


@pytest.mark.asyncio
async def test_check_any_and_check_all(engine: AccessControlEngine, seeded, request_factory) -> None:
    seeded.policies["allow-all"] = _policy("allow-all", ALLOW_ALL)
    request = request_factory(roles=["developer"])

    any_decision = await engine.check_any(request, ["project:delete", "project:read"])
    none_decision = await engine.check_any(request, ["project:delete", "api:write"])
    all_decision = await engine.check_all(request, ["project:read", "project:delete"])

    assert any_decision.allowed
    assert not none_decision.allowed
    assert none_decision.reason == REASON_NONE_GRANTED
    assert not all_decision.allowed
    assert "project:delete" in all_decision.reason
    assert (await engine.check_all(request, ["project:read"])).allowed


@pytest.mark.asyncio
async def test_decisions_are_audited(
    engine: AccessControlEngine, seeded, audit, audit_store, request_factory
) -> None:
    await engine.check_access(request_factory(roles=["viewer"], action="api:write"))
    await audit.drain_pending()
    await audit.flush_batch()

    [entry] = audit_store.entries.values()
    assert entry.kind == "decision"
    assert entry.allowed is False
    assert entry.reason == REASON_RBAC_DENIED
    assert entry.subject_id == "user-1"
