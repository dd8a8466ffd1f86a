"""
Statement-based policy evaluation.

Statements are visited in policy order, then statement order. The
decision starts as DENY; a matching ALLOW statement flips it to ALLOW and
a matching DENY statement sets DENY and stops evaluation entirely, so an
explicit deny always wins regardless of position.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import lru_cache

from accessgate.modules.access.attributes import AttributeBag
from accessgate.modules.access.conditions import ConditionEvaluator
from accessgate.modules.access.rbac import Permission, parse_permission, permission_grants
from accessgate.modules.access.schemas import Effect, Policy, PolicyStatement

REASON_ALLOWED = "Access allowed by policies"
REASON_DENIED = "Access denied by policies"


@lru_cache(maxsize=1024)
def compile_resource_pattern(pattern: str) -> re.Pattern[str]:
    """``*`` matches any run of characters; everything else is literal."""
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


def resource_matches(patterns: Iterable[str], resource_id: str) -> bool:
    return any(compile_resource_pattern(pattern).fullmatch(resource_id) for pattern in patterns)


def action_matches(actions: Iterable[str], action: str) -> bool:
    """Exact match, or a permission-style wildcard such as ``document:*`` or ``all:*``."""
    resource, sep, verb = action.partition(":")
    required = Permission(resource, verb) if sep and resource and verb else None
    for candidate in actions:
        if candidate == action:
            return True
        if required is not None and ":" in candidate and permission_grants(candidate, required):
            return True
    return False


@dataclass
class PolicyResult:
    effect: Effect
    matched_policies: list[str] = field(default_factory=list)
    explicit_deny: bool = False

    @property
    def allowed(self) -> bool:
        return self.effect is Effect.ALLOW

    @property
    def reason(self) -> str:
        return REASON_ALLOWED if self.allowed else REASON_DENIED


class PolicyEvaluator:
    """Evaluates an ordered list of policies for one request."""

    def __init__(self, conditions: ConditionEvaluator | None = None) -> None:
        self.conditions = conditions or ConditionEvaluator()

    def statement_matches(
        self,
        statement: PolicyStatement,
        action: str,
        resource_id: str,
        bag: AttributeBag,
    ) -> bool:
        if not action_matches(statement.actions, action):
            return False
        if not resource_matches(statement.resources, resource_id):
            return False
        return self.conditions.evaluate_all(statement.conditions, bag)

    def evaluate(
        self,
        policies: Iterable[Policy],
        action: str,
        resource_id: str,
        bag: AttributeBag,
    ) -> PolicyResult:
        result = PolicyResult(effect=Effect.DENY)
        for policy in policies:
            if not policy.active:
                continue
            for statement in policy.statements:
                if not self.statement_matches(statement, action, resource_id, bag):
                    continue
                if policy.id not in result.matched_policies:
                    result.matched_policies.append(policy.id)
                if statement.effect is Effect.DENY:
                    result.effect = Effect.DENY
                    result.explicit_deny = True
                    return result
                result.effect = Effect.ALLOW
        return result

    def validate(self, policy: Policy) -> None:
        """Write-time checks: condition trees, operands and patterns."""
        for statement in policy.statements:
            for condition in statement.conditions:
                self.conditions.validate(condition)
            for action in statement.actions:
                if ":" in action:
                    parse_permission(action)
