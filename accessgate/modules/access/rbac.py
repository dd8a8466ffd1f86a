"""
Role-based access resolution with single-parent inheritance.

Permissions are ``resource:action`` strings. A held permission grants a
required one when both parts match exactly or the held part is a wildcard
(``all`` for the resource, ``*`` for the action); ``all:*`` grants
everything.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import NamedTuple

from accessgate.core.logging import get_logger
from accessgate.modules.access.errors import InvalidPermissionError, RoleHierarchyCycleError
from accessgate.modules.access.schemas import RbacConfig, RoleDefinition

logger = get_logger(__name__)

ALL_RESOURCES = "all"
ALL_ACTIONS = "*"
ADMIN_WILDCARD = f"{ALL_RESOURCES}:{ALL_ACTIONS}"


class Permission(NamedTuple):
    resource: str
    action: str

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


def parse_permission(value: str) -> Permission:
    """Split ``resource:action``; the action may itself contain colons."""
    resource, sep, action = value.partition(":")
    if not sep or not resource or not action:
        raise InvalidPermissionError(f"Invalid permission {value!r}, expected 'resource:action'")
    return Permission(resource, action)


def permission_grants(held: str, required: Permission) -> bool:
    """Wildcard-aware match of one held permission against a required one."""
    if held == ADMIN_WILDCARD:
        return True
    resource, sep, action = held.partition(":")
    if not sep:
        return False
    resource_ok = resource == required.resource or resource == ALL_RESOURCES
    action_ok = action == required.action or action == ALL_ACTIONS
    return resource_ok and action_ok


class RbacResolver:
    """Resolves permissions for a scope's role definitions."""

    def __init__(self, config: RbacConfig) -> None:
        self.config = config

    def _role(self, name: str) -> RoleDefinition | None:
        role = self.config.roles.get(name)
        if role is None or not role.active:
            return None
        return role

    def _chain(self, name: str) -> Iterator[RoleDefinition]:
        """Yield a role and its ancestors, stopping at unknown roles or a cycle."""
        visited: set[str] = set()
        current: str | None = name
        while current is not None:
            if current in visited:
                logger.error("role_hierarchy_cycle_detected", role=name, revisited=current)
                return
            visited.add(current)
            role = self._role(current)
            if role is None:
                return
            yield role
            current = role.parent

    def has_permission(self, subject_roles: Iterable[str], required: str | Permission) -> bool:
        if not self.config.enabled:
            return False
        if isinstance(required, str):
            required = parse_permission(required)
        for role_name in subject_roles:
            for role in self._chain(role_name):
                if any(permission_grants(held, required) for held in role.permissions):
                    return True
        return False

    def is_admin(self, subject_roles: Iterable[str]) -> bool:
        """True when some held role grants ``all:*`` directly or by inheritance."""
        if not self.config.enabled:
            return False
        return any(
            ADMIN_WILDCARD in role.permissions
            for role_name in subject_roles
            for role in self._chain(role_name)
        )

    def effective_permissions(self, role_name: str) -> list[str]:
        """Permissions of a role and all its ancestors, deduplicated in order."""
        seen: dict[str, None] = {}
        for role in self._chain(role_name):
            for permission in role.permissions:
                seen.setdefault(permission, None)
        return list(seen)

    def effective_roles(self, role_names: Iterable[str]) -> list[str]:
        """Closure of the held roles over the parent relation."""
        seen: dict[str, None] = {}
        for role_name in role_names:
            for role in self._chain(role_name):
                seen.setdefault(role.name, None)
        return list(seen)


def check_role_hierarchy(roles: dict[str, RoleDefinition], candidate: RoleDefinition) -> None:
    """Raise ``RoleHierarchyCycleError`` if saving ``candidate`` would close a cycle."""
    merged = dict(roles)
    merged[candidate.name] = candidate
    path = [candidate.name]
    current = candidate.parent
    while current is not None:
        path.append(current)
        if current == candidate.name or path.count(current) > 1:
            raise RoleHierarchyCycleError(path)
        parent = merged.get(current)
        if parent is None:
            return
        current = parent.parent


def validate_role(role: RoleDefinition) -> None:
    for permission in role.permissions:
        parse_permission(permission)
    if role.parent == role.name:
        raise RoleHierarchyCycleError([role.name, role.name])
