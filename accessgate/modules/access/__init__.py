"""Access-control decision engine: RBAC, ABAC and statement policies."""

from accessgate.modules.access.errors import (
    AccessControlError,
    BackendUnavailableError,
    ConditionDepthError,
    ConfigurationError,
    InvalidConditionError,
    InvalidPermissionError,
    InvalidRequestAttributesError,
    NotFoundError,
    RoleHierarchyCycleError,
)
from accessgate.modules.access.repository import AccessConfigRepository, SqlAccessConfigRepository
from accessgate.modules.access.schemas import (
    AbacConfig,
    AbacRule,
    AccessDecision,
    AccessRequest,
    ConditionOperator,
    DecisionStage,
    Effect,
    EnvironmentAttributes,
    Policy,
    PolicyStatement,
    RbacConfig,
    ResourceAttributes,
    RoleAssignment,
    RoleDefinition,
    SubjectAttributes,
)

__all__ = [
    "AccessConfigRepository",
    "SqlAccessConfigRepository",
    "AccessRequest",
    "AccessDecision",
    "SubjectAttributes",
    "ResourceAttributes",
    "EnvironmentAttributes",
    "Policy",
    "PolicyStatement",
    "Effect",
    "ConditionOperator",
    "DecisionStage",
    "RoleDefinition",
    "RoleAssignment",
    "RbacConfig",
    "AbacRule",
    "AbacConfig",
    "AccessControlError",
    "ConfigurationError",
    "ConditionDepthError",
    "InvalidConditionError",
    "InvalidPermissionError",
    "RoleHierarchyCycleError",
    "InvalidRequestAttributesError",
    "NotFoundError",
    "BackendUnavailableError",
]
