"""
Administrative operations on access-control configuration.

Every write is validated before it reaches the repository, invalidates
the affected cache entries, schedules a view refresh and is recorded in
the audit log with ``kind="admin"``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from accessgate.core.audit import AuditLogEntry, AuditLogPipeline
from accessgate.core.cache import DecisionCache
from accessgate.core.logging import get_logger
from accessgate.modules.access.abac import validate_rule
from accessgate.modules.access.conditions import ConditionEvaluator
from accessgate.modules.access.errors import NotFoundError
from accessgate.modules.access.policy_engine import PolicyEvaluator
from accessgate.modules.access.rbac import (
    RbacResolver,
    check_role_hierarchy,
    validate_role,
)
from accessgate.modules.access.repository import AccessConfigRepository
from accessgate.modules.access.schemas import (
    AbacRule,
    Policy,
    PolicyMetadata,
    PolicyStatement,
    RoleAssignment,
    RoleDefinition,
)
from accessgate.modules.views.refresher import MaterializedViewRefresher

logger = get_logger(__name__)


class AccessAdminService:
    """CRUD for roles, assignments, ABAC rules and policies."""

    def __init__(
        self,
        repository: AccessConfigRepository,
        *,
        cache: DecisionCache,
        audit: AuditLogPipeline | None = None,
        views: MaterializedViewRefresher | None = None,
        condition_max_depth: int = 32,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._audit = audit
        self._views = views
        self._policies = PolicyEvaluator(ConditionEvaluator(max_depth=condition_max_depth))

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(
        self,
        actor: str,
        action: str,
        *,
        scope_id: str | None,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            "access_config_changed",
            actor=actor,
            action=action,
            scope_id=scope_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        if self._audit is not None:
            self._audit.submit(
                AuditLogEntry(
                    request_id=uuid4().hex,
                    kind="admin",
                    subject_id=actor,
                    scope_id=scope_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    details=details,
                )
            )

    def _refresh_views(self) -> None:
        if self._views is not None:
            self._views.schedule_refresh()

    # ------------------------------------------------------------------
    # Scope switches
    # ------------------------------------------------------------------

    async def set_rbac_enabled(self, scope_id: str, enabled: bool, *, actor: str) -> None:
        await self._repository.set_scope_settings(scope_id, rbac_enabled=enabled)
        await self._cache.invalidate_scope(scope_id)
        self._record(
            actor,
            "enable_rbac" if enabled else "disable_rbac",
            scope_id=scope_id,
            resource_type="scope",
            resource_id=scope_id,
        )

    async def set_abac_enabled(self, scope_id: str, enabled: bool, *, actor: str) -> None:
        await self._repository.set_scope_settings(scope_id, abac_enabled=enabled)
        await self._cache.invalidate_scope(scope_id)
        self._record(
            actor,
            "enable_abac" if enabled else "disable_abac",
            scope_id=scope_id,
            resource_type="scope",
            resource_id=scope_id,
        )

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def save_role(self, scope_id: str, role: RoleDefinition, *, actor: str) -> RoleDefinition:
        """Create or replace a role; rejects malformed permissions and parent cycles."""
        validate_role(role)
        config = await self._repository.load_rbac_config(scope_id)
        check_role_hierarchy(config.roles, role)
        created = role.name not in config.roles

        await self._repository.save_role(scope_id, role)
        await self._cache.invalidate_scope(scope_id)
        self._refresh_views()
        self._record(
            actor,
            "create_role" if created else "update_role",
            scope_id=scope_id,
            resource_type="role",
            resource_id=role.name,
            details={"parent": role.parent, "permissions": role.permissions},
        )
        return role

    async def disable_role(self, scope_id: str, role_name: str, *, actor: str) -> RoleDefinition:
        """Soft-disable a role; it stops granting permissions but stays resolvable for history."""
        config = await self._repository.load_rbac_config(scope_id)
        role = config.roles.get(role_name)
        if role is None:
            raise NotFoundError(f"Role {role_name!r} not found in scope {scope_id!r}")
        disabled = role.model_copy(update={"active": False})
        await self._repository.save_role(scope_id, disabled)
        await self._cache.invalidate_scope(scope_id)
        self._refresh_views()
        self._record(actor, "disable_role", scope_id=scope_id, resource_type="role", resource_id=role_name)
        return disabled

    async def effective_permissions(self, scope_id: str, role_name: str) -> list[str]:
        config = await self._repository.load_rbac_config(scope_id)
        return RbacResolver(config).effective_permissions(role_name)

    async def effective_roles(self, scope_id: str, role_names: list[str]) -> list[str]:
        config = await self._repository.load_rbac_config(scope_id)
        return RbacResolver(config).effective_roles(role_names)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def assign_role(
        self, subject_id: str, role_name: str, scope_id: str, *, actor: str
    ) -> RoleAssignment:
        """Grant a role; assigning an already active grant returns it unchanged."""
        existing = await self._repository.find_active_assignment(subject_id, role_name, scope_id)
        if existing is not None:
            return existing

        config = await self._repository.load_rbac_config(scope_id)
        role = config.roles.get(role_name)
        if role is None or not role.active:
            raise NotFoundError(f"Role {role_name!r} not found in scope {scope_id!r}")

        assignment = RoleAssignment(
            subject_id=subject_id,
            role_name=role_name,
            scope_id=scope_id,
            assigned_by=actor,
        )
        await self._repository.add_assignment(assignment)
        await self._invalidate_subject(subject_id, scope_id)
        self._record(
            actor,
            "assign_role",
            scope_id=scope_id,
            resource_type="role_assignment",
            resource_id=f"{subject_id}:{role_name}",
        )
        return assignment

    async def remove_role(self, subject_id: str, role_name: str, scope_id: str, *, actor: str) -> None:
        removed = await self._repository.deactivate_assignment(subject_id, role_name, scope_id, actor)
        if not removed:
            raise NotFoundError(
                f"Subject {subject_id!r} has no active assignment of {role_name!r} in {scope_id!r}"
            )
        await self._invalidate_subject(subject_id, scope_id)
        self._record(
            actor,
            "remove_role",
            scope_id=scope_id,
            resource_type="role_assignment",
            resource_id=f"{subject_id}:{role_name}",
        )

    async def get_subject_roles(self, subject_id: str, scope_id: str) -> list[str]:
        return await self._repository.get_subject_roles(subject_id, scope_id)

    async def _invalidate_subject(self, subject_id: str, scope_id: str) -> None:
        await self._cache.invalidate_subject(subject_id, scope_id)
        if self._views is not None:
            await self._views.invalidate_subject(subject_id, scope_id)
        self._refresh_views()

    # ------------------------------------------------------------------
    # ABAC rules
    # ------------------------------------------------------------------

    async def save_abac_rule(self, scope_id: str, rule: AbacRule, *, actor: str) -> AbacRule:
        validate_rule(rule)
        config = await self._repository.load_abac_config(scope_id)
        created = all(existing.name != rule.name for existing in config.rules)
        await self._repository.save_abac_rule(scope_id, rule)
        await self._cache.invalidate_scope(scope_id)
        self._record(
            actor,
            "create_abac_rule" if created else "update_abac_rule",
            scope_id=scope_id,
            resource_type="abac_rule",
            resource_id=rule.name,
            details={"conditions": rule.conditions},
        )
        return rule

    async def delete_abac_rule(self, scope_id: str, name: str, *, actor: str) -> None:
        if not await self._repository.deactivate_abac_rule(scope_id, name):
            raise NotFoundError(f"ABAC rule {name!r} not found in scope {scope_id!r}")
        await self._cache.invalidate_scope(scope_id)
        self._record(actor, "delete_abac_rule", scope_id=scope_id, resource_type="abac_rule", resource_id=name)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def create_policy(
        self,
        *,
        name: str,
        statements: list[PolicyStatement],
        actor: str,
        description: str = "",
        version: str = "1",
        scope_id: str | None = None,
        policy_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Policy:
        now = datetime.now(UTC)
        policy = Policy(
            id=policy_id or uuid4().hex,
            name=name,
            description=description,
            version=version,
            statements=statements,
            scope_id=scope_id,
            metadata=PolicyMetadata(
                created_at=now,
                updated_at=now,
                created_by=actor,
                updated_by=actor,
                extra=metadata or {},
            ),
        )
        self._policies.validate(policy)
        await self._repository.save_policy(policy)
        await self._cache.invalidate_policies(scope_id)
        self._record(
            actor,
            "create_policy",
            scope_id=scope_id,
            resource_type="policy",
            resource_id=policy.id,
            details={"name": name, "version": version},
        )
        return policy

    async def update_policy(self, policy_id: str, *, actor: str, **changes: Any) -> Policy:
        """Apply a partial update; the caller supplies any version bump."""
        current = await self.get_policy(policy_id)
        allowed = {"name", "description", "version", "statements", "scope_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unsupported policy fields: {', '.join(sorted(unknown))}")

        data = current.model_dump()
        data.update(changes)
        data["metadata"] = current.metadata.model_copy(
            update={"updated_at": datetime.now(UTC), "updated_by": actor}
        )
        updated = Policy.model_validate(data)
        self._policies.validate(updated)

        await self._repository.save_policy(updated)
        await self._cache.invalidate_policies(current.scope_id)
        if updated.scope_id != current.scope_id:
            await self._cache.invalidate_policies(updated.scope_id)
        self._record(
            actor,
            "update_policy",
            scope_id=updated.scope_id,
            resource_type="policy",
            resource_id=policy_id,
            details={"fields": sorted(changes), "version": updated.version},
        )
        return updated

    async def delete_policy(self, policy_id: str, *, actor: str) -> None:
        current = await self.get_policy(policy_id)
        await self._repository.deactivate_policy(policy_id, actor)
        await self._cache.invalidate_policies(current.scope_id)
        self._record(
            actor,
            "delete_policy",
            scope_id=current.scope_id,
            resource_type="policy",
            resource_id=policy_id,
        )

    async def get_policy(self, policy_id: str) -> Policy:
        policy = await self._repository.get_policy(policy_id)
        if policy is None or not policy.active:
            raise NotFoundError(f"Policy {policy_id!r} not found")
        return policy

    async def list_policies(
        self,
        *,
        scope_id: str | None = None,
        name: str | None = None,
        version: str | None = None,
        created_by: str | None = None,
    ) -> list[Policy]:
        return await self._repository.list_policies(
            scope_id=scope_id, name=name, version=version, created_by=created_by
        )
