"""Pydantic schemas for access requests, decisions and stored configuration.

Conditions are a discriminated union over ``operator``: leaf comparisons
carry a scalar or array ``value``, logical nodes carry nested conditions
(``and``/``or``: a list, ``not``: a single condition). The JSON shape is
the same one persisted in the ``access_policies.statements`` column.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    computed_field,
    field_validator,
)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Effect(str, Enum):
    """Outcome of a policy statement."""

    ALLOW = "allow"
    DENY = "deny"


class ConditionOperator(str, Enum):
    """Fixed operator set understood by the condition evaluator."""

    # Comparison
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_EQUALS = "greater_than_equals"
    LESS_THAN_EQUALS = "less_than_equals"

    # String
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    MATCHES = "matches"

    # Array
    IN = "in"
    NOT_IN = "not_in"

    # Logical
    AND = "and"
    OR = "or"
    NOT = "not"


LOGICAL_OPERATORS = frozenset({ConditionOperator.AND, ConditionOperator.OR, ConditionOperator.NOT})

LeafOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_than_equals",
    "less_than_equals",
    "starts_with",
    "ends_with",
    "contains",
    "not_contains",
    "matches",
    "in",
    "not_in",
]


class DecisionStage(str, Enum):
    """Which layer produced a decision."""

    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    RBAC = "rbac"
    ABAC = "abac"
    POLICY = "policy"
    ADMIN_BYPASS = "admin_bypass"
    CONFIGURATION = "configuration"
    BACKEND = "backend"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class LeafCondition(BaseModel):
    """``attribute <operator> value``, optionally negated."""

    operator: LeafOperator
    attribute: str = Field(min_length=1)
    value: Any = None
    negate: bool = False


class AndCondition(BaseModel):
    """True when every nested condition is true."""

    operator: Literal["and"]
    attribute: str | None = None
    value: list[Condition] = Field(default_factory=list)


class OrCondition(BaseModel):
    """True when at least one nested condition is true."""

    operator: Literal["or"]
    attribute: str | None = None
    value: list[Condition] = Field(default_factory=list)


class NotCondition(BaseModel):
    """Inverts a single nested condition."""

    operator: Literal["not"]
    attribute: str | None = None
    value: Condition


Condition = Annotated[
    LeafCondition | AndCondition | OrCondition | NotCondition,
    Field(discriminator="operator"),
]

AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()

condition_adapter: TypeAdapter[Condition] = TypeAdapter(Condition)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class PolicyStatement(BaseModel):
    """A single allow/deny rule."""

    effect: Effect
    actions: list[str] = Field(min_length=1)
    resources: list[str] = Field(min_length=1)
    conditions: list[Condition] = Field(default_factory=list)


class PolicyMetadata(BaseModel):
    """Authorship information kept alongside a policy."""

    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Policy(BaseModel):
    """Versioned, ordered list of statements.

    ``scope_id`` of ``None`` marks a global policy that applies to every
    scope.
    """

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    version: str = "1"
    statements: list[PolicyStatement] = Field(default_factory=list)
    metadata: PolicyMetadata = Field(default_factory=PolicyMetadata)
    scope_id: str | None = None
    active: bool = True


# ---------------------------------------------------------------------------
# RBAC / ABAC configuration
# ---------------------------------------------------------------------------


class RoleDefinition(BaseModel):
    """A named permission set with an optional single parent."""

    name: str = Field(min_length=1)
    parent: str | None = None
    permissions: list[str] = Field(default_factory=list)
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    active: bool = True


class RbacConfig(BaseModel):
    """Role definitions of one scope."""

    enabled: bool = True
    roles: dict[str, RoleDefinition] = Field(default_factory=dict)


class AbacRule(BaseModel):
    """Named rule: optional ``requiredRoles`` plus attribute clauses.

    Every key other than ``requiredRoles`` is an attribute name; its value
    is either the expected value (equality) or an operator clause such as
    ``{"operator": "in", "value": ["eu-west", "eu-central"]}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    conditions: dict[str, Any] = Field(default_factory=dict)

    @field_validator("conditions")
    @classmethod
    def _normalize_required_roles(cls, value: dict[str, Any]) -> dict[str, Any]:
        if "required_roles" in value and "requiredRoles" not in value:
            value = dict(value)
            value["requiredRoles"] = value.pop("required_roles")
        return value

    @property
    def required_roles(self) -> list[str]:
        roles = self.conditions.get("requiredRoles") or []
        return [str(role) for role in roles]

    @property
    def attribute_clauses(self) -> dict[str, Any]:
        return {key: value for key, value in self.conditions.items() if key != "requiredRoles"}


class AbacConfig(BaseModel):
    """ABAC rules of one scope. ABAC is opt-in, so it defaults to disabled."""

    enabled: bool = False
    rules: list[AbacRule] = Field(default_factory=list)


class RoleAssignment(BaseModel):
    """A (subject, role, scope) grant with soft-removal bookkeeping."""

    subject_id: str
    role_name: str
    scope_id: str
    assigned_by: str
    assigned_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    removed_by: str | None = None
    removed_at: datetime | None = None
    active: bool = True


# ---------------------------------------------------------------------------
# Requests and decisions
# ---------------------------------------------------------------------------


class SubjectAttributes(BaseModel):
    """Resolved identity of the caller, supplied by the auth layer."""

    id: str = Field(min_length=1)
    roles: list[str] = Field(default_factory=list)
    organization: str | None = None
    scope_id: str | None = None
    environment: str | None = None
    ip_address: str | None = None
    device_id: str | None = None
    last_authenticated: datetime | None = None
    custom_attributes: dict[str, Any] = Field(default_factory=dict)


class ResourceAttributes(BaseModel):
    """Descriptor of the resource being acted upon."""

    type: str
    id: str
    owner: str | None = None
    scope_id: str | None = None
    organization: str | None = None
    environment: str | None = None
    tags: list[str] = Field(default_factory=list)
    sensitivity: str | None = None
    custom_attributes: dict[str, Any] = Field(default_factory=dict)


class EnvironmentAttributes(BaseModel):
    """Request-time environment; hour and weekday are derived from ``timestamp``."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ip_range: str | None = None
    location: str | None = None
    custom_attributes: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def time_of_day(self) -> int:
        """Hour of day, 0-23."""
        return self.timestamp.hour

    @computed_field  # type: ignore[prop-decorator]
    @property
    def day_of_week(self) -> int:
        """Day of week, 0 (Sunday) to 6 (Saturday)."""
        return self.timestamp.isoweekday() % 7


class AccessRequest(BaseModel):
    """Ephemeral input of a single access check."""

    subject: SubjectAttributes
    resource: ResourceAttributes
    action: str = Field(min_length=1)
    environment: EnvironmentAttributes = Field(default_factory=EnvironmentAttributes)
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def scope_id(self) -> str:
        """Scope the request is evaluated in: the resource's scope, else the subject's."""
        return self.resource.scope_id or self.subject.scope_id or ""


class AccessDecision(BaseModel):
    """Structured result returned for every access check."""

    allowed: bool
    reason: str
    effect: Effect
    stage: DecisionStage
    matched_policies: list[str] = Field(default_factory=list)
    request_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    cached: bool = False
