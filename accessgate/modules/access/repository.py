"""
Persistence of access-control configuration.

``AccessConfigRepository`` is the seam between the engine and the
database. ``SqlAccessConfigRepository`` implements it with SQLAlchemy;
every method opens its own short-lived session so the engine can be
shared across tasks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessgate.db.models import (
    AbacRuleRecord,
    AccessPolicy,
    AccessRole,
    ScopeAccessSettings,
    UserRoleAssignment,
)
from accessgate.modules.access.schemas import (
    AbacConfig,
    AbacRule,
    Policy,
    PolicyMetadata,
    PolicyStatement,
    RbacConfig,
    RoleAssignment,
    RoleDefinition,
)


class AccessConfigRepository(Protocol):
    """Storage operations used by the engine, the admin service and the view refresher."""

    async def load_rbac_config(self, scope_id: str) -> RbacConfig: ...

    async def load_abac_config(self, scope_id: str) -> AbacConfig: ...

    async def load_policies(self, scope_id: str | None) -> list[Policy]: ...

    async def get_subject_roles(self, subject_id: str, scope_id: str) -> list[str]: ...

    async def list_scopes(self) -> list[str]: ...

    async def list_assignments(self, scope_id: str) -> list[RoleAssignment]: ...

    async def set_scope_settings(
        self,
        scope_id: str,
        *,
        rbac_enabled: bool | None = None,
        abac_enabled: bool | None = None,
    ) -> None: ...

    async def save_role(self, scope_id: str, role: RoleDefinition) -> None: ...

    async def find_active_assignment(
        self, subject_id: str, role_name: str, scope_id: str
    ) -> RoleAssignment | None: ...

    async def add_assignment(self, assignment: RoleAssignment) -> None: ...

    async def deactivate_assignment(
        self, subject_id: str, role_name: str, scope_id: str, removed_by: str
    ) -> bool: ...

    async def save_abac_rule(self, scope_id: str, rule: AbacRule) -> None: ...

    async def deactivate_abac_rule(self, scope_id: str, name: str) -> bool: ...

    async def save_policy(self, policy: Policy) -> None: ...

    async def get_policy(self, policy_id: str) -> Policy | None: ...

    async def list_policies(
        self,
        *,
        scope_id: str | None = None,
        name: str | None = None,
        version: str | None = None,
        created_by: str | None = None,
    ) -> list[Policy]: ...

    async def deactivate_policy(self, policy_id: str, deleted_by: str) -> bool: ...


def _role_from_record(record: AccessRole) -> RoleDefinition:
    return RoleDefinition(
        name=record.name,
        parent=record.parent_name,
        permissions=list(record.permissions or []),
        description=record.description,
        metadata=dict(record.metadata_ or {}),
        active=record.active,
    )


def _policy_from_record(record: AccessPolicy) -> Policy:
    return Policy(
        id=record.id,
        name=record.name,
        description=record.description,
        version=record.version,
        statements=[PolicyStatement.model_validate(s) for s in record.statements or []],
        metadata=PolicyMetadata(
            created_at=record.created_at,
            updated_at=record.updated_at,
            created_by=record.created_by,
            updated_by=record.updated_by,
            extra=dict(record.metadata_ or {}),
        ),
        scope_id=record.scope_id,
        active=record.active,
    )


def _assignment_from_record(record: UserRoleAssignment) -> RoleAssignment:
    return RoleAssignment(
        subject_id=record.subject_id,
        role_name=record.role_name,
        scope_id=record.scope_id,
        assigned_by=record.assigned_by,
        assigned_at=record.assigned_at,
        removed_by=record.removed_by,
        removed_at=record.removed_at,
        active=record.active,
    )


class SqlAccessConfigRepository:
    """SQLAlchemy implementation of ``AccessConfigRepository``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _scope_settings(self, session: AsyncSession, scope_id: str) -> ScopeAccessSettings:
        settings = await session.get(ScopeAccessSettings, scope_id)
        if settings is None:
            return ScopeAccessSettings(scope_id=scope_id, rbac_enabled=True, abac_enabled=False)
        return settings

    async def load_rbac_config(self, scope_id: str) -> RbacConfig:
        async with self._session_factory() as session:
            settings = await self._scope_settings(session, scope_id)
            result = await session.execute(select(AccessRole).where(AccessRole.scope_id == scope_id))
            roles = {record.name: _role_from_record(record) for record in result.scalars()}
        return RbacConfig(enabled=settings.rbac_enabled, roles=roles)

    async def load_abac_config(self, scope_id: str) -> AbacConfig:
        async with self._session_factory() as session:
            settings = await self._scope_settings(session, scope_id)
            result = await session.execute(
                select(AbacRuleRecord)
                .where(AbacRuleRecord.scope_id == scope_id, AbacRuleRecord.active.is_(True))
                .order_by(AbacRuleRecord.created_at, AbacRuleRecord.name)
            )
            rules = [
                AbacRule(name=r.name, description=r.description, conditions=dict(r.conditions))
                for r in result.scalars()
            ]
        return AbacConfig(enabled=settings.abac_enabled, rules=rules)

    async def load_policies(self, scope_id: str | None) -> list[Policy]:
        """Active policies for a scope plus every active global policy, oldest first."""
        scope_filter = (
            AccessPolicy.scope_id.is_(None)
            if scope_id is None
            else or_(AccessPolicy.scope_id.is_(None), AccessPolicy.scope_id == scope_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(AccessPolicy)
                .where(AccessPolicy.active.is_(True), scope_filter)
                .order_by(AccessPolicy.created_at, AccessPolicy.id)
            )
            return [_policy_from_record(record) for record in result.scalars()]

    async def get_subject_roles(self, subject_id: str, scope_id: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserRoleAssignment.role_name)
                .where(
                    UserRoleAssignment.subject_id == subject_id,
                    UserRoleAssignment.scope_id == scope_id,
                    UserRoleAssignment.active.is_(True),
                )
                .order_by(UserRoleAssignment.assigned_at)
            )
            return list(result.scalars())

    async def list_scopes(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserRoleAssignment.scope_id)
                .where(UserRoleAssignment.active.is_(True))
                .distinct()
            )
            return sorted(result.scalars())

    async def list_assignments(self, scope_id: str) -> list[RoleAssignment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserRoleAssignment).where(
                    UserRoleAssignment.scope_id == scope_id,
                    UserRoleAssignment.active.is_(True),
                )
            )
            return [_assignment_from_record(record) for record in result.scalars()]

    async def find_active_assignment(
        self, subject_id: str, role_name: str, scope_id: str
    ) -> RoleAssignment | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserRoleAssignment).where(
                    UserRoleAssignment.subject_id == subject_id,
                    UserRoleAssignment.role_name == role_name,
                    UserRoleAssignment.scope_id == scope_id,
                    UserRoleAssignment.active.is_(True),
                )
            )
            record = result.scalar_one_or_none()
            return _assignment_from_record(record) if record is not None else None

    async def get_policy(self, policy_id: str) -> Policy | None:
        async with self._session_factory() as session:
            record = await session.get(AccessPolicy, policy_id)
            return _policy_from_record(record) if record is not None else None

    async def list_policies(
        self,
        *,
        scope_id: str | None = None,
        name: str | None = None,
        version: str | None = None,
        created_by: str | None = None,
    ) -> list[Policy]:
        query = select(AccessPolicy).where(AccessPolicy.active.is_(True))
        if scope_id is not None:
            query = query.where(AccessPolicy.scope_id == scope_id)
        if name is not None:
            query = query.where(AccessPolicy.name == name)
        if version is not None:
            query = query.where(AccessPolicy.version == version)
        if created_by is not None:
            query = query.where(AccessPolicy.created_by == created_by)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(AccessPolicy.created_at))
            return [_policy_from_record(record) for record in result.scalars()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_scope_settings(
        self,
        scope_id: str,
        *,
        rbac_enabled: bool | None = None,
        abac_enabled: bool | None = None,
    ) -> None:
        async with self._session_factory() as session, session.begin():
            settings = await session.get(ScopeAccessSettings, scope_id)
            if settings is None:
                settings = ScopeAccessSettings(scope_id=scope_id, rbac_enabled=True, abac_enabled=False)
                session.add(settings)
            if rbac_enabled is not None:
                settings.rbac_enabled = rbac_enabled
            if abac_enabled is not None:
                settings.abac_enabled = abac_enabled

    async def save_role(self, scope_id: str, role: RoleDefinition) -> None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(AccessRole).where(AccessRole.scope_id == scope_id, AccessRole.name == role.name)
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = AccessRole(scope_id=scope_id, name=role.name)
                session.add(record)
            record.parent_name = role.parent
            record.permissions = list(role.permissions)
            record.description = role.description
            record.metadata_ = dict(role.metadata)
            record.active = role.active

    async def add_assignment(self, assignment: RoleAssignment) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                UserRoleAssignment(
                    subject_id=assignment.subject_id,
                    role_name=assignment.role_name,
                    scope_id=assignment.scope_id,
                    assigned_by=assignment.assigned_by,
                    assigned_at=assignment.assigned_at,
                    active=True,
                )
            )

    async def deactivate_assignment(
        self, subject_id: str, role_name: str, scope_id: str, removed_by: str
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(UserRoleAssignment)
                .where(
                    UserRoleAssignment.subject_id == subject_id,
                    UserRoleAssignment.role_name == role_name,
                    UserRoleAssignment.scope_id == scope_id,
                    UserRoleAssignment.active.is_(True),
                )
                .values(active=False, removed_by=removed_by, removed_at=datetime.now(UTC))
            )
            return bool(result.rowcount)  # type: ignore[attr-defined]

    async def save_abac_rule(self, scope_id: str, rule: AbacRule) -> None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(AbacRuleRecord).where(
                    AbacRuleRecord.scope_id == scope_id,
                    AbacRuleRecord.name == rule.name,
                    AbacRuleRecord.active.is_(True),
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = AbacRuleRecord(scope_id=scope_id, name=rule.name)
                session.add(record)
            record.description = rule.description
            record.conditions = dict(rule.conditions)

    async def deactivate_abac_rule(self, scope_id: str, name: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(AbacRuleRecord)
                .where(
                    AbacRuleRecord.scope_id == scope_id,
                    AbacRuleRecord.name == name,
                    AbacRuleRecord.active.is_(True),
                )
                .values(active=False)
            )
            return bool(result.rowcount)  # type: ignore[attr-defined]

    async def save_policy(self, policy: Policy) -> None:
        statements: list[Any] = [s.model_dump(mode="json") for s in policy.statements]
        async with self._session_factory() as session, session.begin():
            record = await session.get(AccessPolicy, policy.id)
            if record is None:
                record = AccessPolicy(id=policy.id, created_by=policy.metadata.created_by)
                session.add(record)
            record.scope_id = policy.scope_id
            record.name = policy.name
            record.description = policy.description
            record.version = policy.version
            record.statements = statements
            record.metadata_ = dict(policy.metadata.extra)
            record.updated_by = policy.metadata.updated_by
            record.active = policy.active

    async def deactivate_policy(self, policy_id: str, deleted_by: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(AccessPolicy)
                .where(AccessPolicy.id == policy_id, AccessPolicy.active.is_(True))
                .values(active=False, deleted_by=deleted_by, deleted_at=datetime.now(UTC))
            )
            return bool(result.rowcount)  # type: ignore[attr-defined]
