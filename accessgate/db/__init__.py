"""Database package."""

from accessgate.db.models import (
    AbacRuleRecord,
    AccessPolicy,
    AccessRole,
    AuditLogRecord,
    Base,
    ScopeAccessSettings,
    UserRoleAssignment,
)
from accessgate.db.session import close_db, get_session_factory, init_db

__all__ = [
    "init_db",
    "close_db",
    "get_session_factory",
    "Base",
    "ScopeAccessSettings",
    "AccessRole",
    "UserRoleAssignment",
    "AbacRuleRecord",
    "AccessPolicy",
    "AuditLogRecord",
]
