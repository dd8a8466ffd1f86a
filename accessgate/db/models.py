"""
SQLAlchemy ORM models for the access-control engine.

Configuration tables are scope-partitioned and never hard-deleted: roles,
assignments, rules and policies are soft-disabled so that audit history
keeps resolving. The audit log is append-only and idempotent on
``request_id``.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[Any]: JSONB,
    }


# =============================================================================
# Scope configuration
# =============================================================================


class ScopeAccessSettings(Base):
    """Per-scope switches for the RBAC and ABAC layers."""

    __tablename__ = "scope_access_settings"

    scope_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    rbac_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    abac_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class AccessRole(Base):
    """
    Named permission set within a scope.

    ``parent_name`` references another role of the same scope; the parent
    graph is kept acyclic by the administrative service.
    """

    __tablename__ = "access_roles"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    scope_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_name: Mapped[str | None] = mapped_column(String(100))
    permissions: Mapped[list[Any]] = mapped_column(JSONB, default=list, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (UniqueConstraint("scope_id", "name", name="uq_access_roles_scope_name"),)


class UserRoleAssignment(Base):
    """Grant of a role to a subject within a scope. Revocation is soft."""

    __tablename__ = "user_role_assignments"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    role_name: Mapped[str] = mapped_column(String(100), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    removed_by: Mapped[str | None] = mapped_column(String(255))
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index(
            "uq_user_role_assignments_active",
            "subject_id",
            "role_name",
            "scope_id",
            unique=True,
            postgresql_where=text("active"),
        ),
        Index("ix_user_role_assignments_scope", "scope_id"),
    )


class AbacRuleRecord(Base):
    """ABAC rule owned by a scope; ``conditions`` holds the clause map."""

    __tablename__ = "abac_rules"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    scope_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    conditions: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index(
            "uq_abac_rules_scope_name_active",
            "scope_id",
            "name",
            unique=True,
            postgresql_where=text("active"),
        ),
    )


class AccessPolicy(Base):
    """
    Versioned statement list.

    ``scope_id`` NULL marks a global policy. Deletion is soft
    (``active = false`` plus ``deleted_by`` / ``deleted_at``).
    """

    __tablename__ = "access_policies"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope_id: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    version: Mapped[str] = mapped_column(String(50), default="1", nullable=False)
    statements: Mapped[list[Any]] = mapped_column(JSONB, default=list, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255))
    updated_by: Mapped[str | None] = mapped_column(String(255))
    deleted_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_access_policies_scope_active", "scope_id", "active"),
        Index("ix_access_policies_name", "name"),
    )


# =============================================================================
# Audit
# =============================================================================


class AuditLogRecord(Base):
    """Append-only record of an access decision or administrative change."""

    __tablename__ = "access_audit_log"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="decision")
    subject_id: Mapped[str | None] = mapped_column(String(255))
    scope_id: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(100))
    resource_id: Mapped[str | None] = mapped_column(String(255))
    allowed: Mapped[bool | None] = mapped_column(Boolean)
    reason: Mapped[str | None] = mapped_column(Text)
    stage: Mapped[str | None] = mapped_column(String(50))
    matched_policies: Mapped[list[Any]] = mapped_column(JSONB, default=list, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("request_id", name="uq_access_audit_log_request_id"),
        Index("ix_access_audit_log_subject", "subject_id"),
        Index("ix_access_audit_log_scope_created", "scope_id", "created_at"),
    )
