"""
ABAC rule evaluation.

A scope's rules are OR-ed. Within a rule every clause must hold: the
subject must hold one of ``requiredRoles`` (when declared), and every
other key is looked up first among subject attributes, then in the
request context. Resource and environment attributes are never consulted;
a key found in neither subject nor context fails the rule.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from accessgate.modules.access.attributes import (
    MISSING,
    apply_operator,
    compile_pattern,
    strict_equals,
)
from accessgate.modules.access.errors import InvalidConditionError
from accessgate.modules.access.schemas import (
    LOGICAL_OPERATORS,
    AbacConfig,
    AbacRule,
    ConditionOperator,
)


def _is_operator_clause(expected: Any) -> bool:
    return isinstance(expected, Mapping) and "operator" in expected


def _lookup(key: str, sources: Iterable[Mapping[str, Any]]) -> Any:
    for source in sources:
        if key in source and source[key] is not None:
            return source[key]
    return MISSING


def _clause_holds(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        return False
    if _is_operator_clause(expected):
        result = apply_operator(expected["operator"], actual, expected.get("value"))
        return not result if expected.get("negate") else result
    return strict_equals(actual, expected)


class AbacEvaluator:
    """Evaluates a scope's ABAC configuration."""

    def __init__(self, config: AbacConfig) -> None:
        self.config = config

    def rule_matches(
        self,
        rule: AbacRule,
        subject_roles: Iterable[str],
        subject_attributes: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> bool:
        required = rule.required_roles
        if required and not set(required).intersection(subject_roles):
            return False
        sources = (subject_attributes, context)
        return all(
            _clause_holds(_lookup(key, sources), expected)
            for key, expected in rule.attribute_clauses.items()
        )

    def evaluate(
        self,
        subject_roles: Iterable[str],
        subject_attributes: Mapping[str, Any],
        resource_attributes: Mapping[str, Any] | None = None,
        environment_attributes: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        roles = list(subject_roles)
        return any(
            self.rule_matches(rule, roles, subject_attributes, context or {})
            for rule in self.config.rules
        )


def validate_rule(rule: AbacRule) -> None:
    """Reject rules whose clauses could never be evaluated."""
    required = rule.conditions.get("requiredRoles")
    if required is not None and (
        not isinstance(required, list) or not all(isinstance(role, str) for role in required)
    ):
        raise InvalidConditionError(f"Rule {rule.name!r}: requiredRoles must be a list of role names")

    for key, expected in rule.attribute_clauses.items():
        if not _is_operator_clause(expected):
            continue
        try:
            operator = ConditionOperator(expected["operator"])
        except ValueError as exc:
            raise InvalidConditionError(
                f"Rule {rule.name!r}: unknown operator {expected['operator']!r} for {key!r}"
            ) from exc
        if operator in LOGICAL_OPERATORS:
            raise InvalidConditionError(
                f"Rule {rule.name!r}: logical operator {operator.value!r} is not allowed in a clause"
            )
        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) and not isinstance(
            expected.get("value"), list
        ):
            raise InvalidConditionError(f"Rule {rule.name!r}: {operator.value} requires an array value")
        if operator is ConditionOperator.MATCHES:
            pattern = expected.get("value")
            if not isinstance(pattern, str):
                raise InvalidConditionError(f"Rule {rule.name!r}: matches requires a string pattern")
            compile_pattern(pattern)
