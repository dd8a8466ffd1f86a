"""
Unit tests for statement matching and explicit-deny precedence.
"""

from typing import Any

import pytest

from accessgate.modules.access.attributes import AttributeBag
from accessgate.modules.access.errors import ConditionDepthError
from accessgate.modules.access.policy_engine import (
    REASON_ALLOWED,
    REASON_DENIED,
    PolicyEvaluator,
    action_matches,
    resource_matches,
)
from accessgate.modules.access.schemas import Effect, Policy, PolicyStatement

BAG = AttributeBag({"subject": {"organization": "acme"}})


def _policy(policy_id: str, *statements: dict[str, Any], active: bool = True) -> Policy:
    return Policy(
        id=policy_id,
        name=policy_id,
        statements=[PolicyStatement.model_validate(s) for s in statements],
        active=active,
    )


ALLOW_ALL = {"effect": "allow", "actions": ["project:delete", "project:read"], "resources": ["*"]}
DENY_PROD = {"effect": "deny", "actions": ["project:delete"], "resources": ["prod-*"]}


def test_default_is_deny() -> None:
    result = PolicyEvaluator().evaluate([], "project:read", "x", BAG)
    assert result.effect is Effect.DENY
    assert result.reason == REASON_DENIED
    assert result.matched_policies == []


def test_explicit_deny_wins_regardless_of_order() -> None:
    evaluator = PolicyEvaluator()
    for policies in (
        [_policy("allow", ALLOW_ALL), _policy("deny", DENY_PROD)],
        [_policy("deny", DENY_PROD), _policy("allow", ALLOW_ALL)],
    ):
        result = evaluator.evaluate(policies, "project:delete", "prod-42", BAG)
        assert result.effect is Effect.DENY
        assert result.explicit_deny


def test_allow_when_no_deny_matches() -> None:
    policies = [_policy("deny", DENY_PROD), _policy("allow", ALLOW_ALL)]
    result = PolicyEvaluator().evaluate(policies, "project:delete", "dev-42", BAG)
    assert result.effect is Effect.ALLOW
    assert result.reason == REASON_ALLOWED
    assert result.matched_policies == ["allow"]


def test_matched_policies_deduplicated_in_order() -> None:
    policies = [
        _policy("p1", ALLOW_ALL, ALLOW_ALL),
        _policy("p2", ALLOW_ALL),
    ]
    result = PolicyEvaluator().evaluate(policies, "project:read", "a", BAG)
    assert result.matched_policies == ["p1", "p2"]


def test_inactive_policy_ignored() -> None:
    result = PolicyEvaluator().evaluate(
        [_policy("gone", ALLOW_ALL, active=False)], "project:read", "a", BAG
    )
    assert result.effect is Effect.DENY


def test_conditions_gate_statement() -> None:
    statement = {
        **ALLOW_ALL,
        "conditions": [{"operator": "equals", "attribute": "organization", "value": "globex"}],
    }
    result = PolicyEvaluator().evaluate([_policy("p", statement)], "project:read", "a", BAG)
    assert result.effect is Effect.DENY


def test_resource_pattern_is_anchored_and_literal() -> None:
    assert resource_matches(["prod-*"], "prod-42")
    assert not resource_matches(["prod-*"], "xprod-42")
    assert resource_matches(["doc.v1"], "doc.v1")
    assert not resource_matches(["doc.v1"], "docXv1")
    assert resource_matches(["a*b*c"], "a-b-c")


def test_action_wildcards() -> None:
    assert action_matches(["project:*"], "project:delete")
    assert action_matches(["all:*"], "billing:read")
    assert not action_matches(["project:read"], "project:delete")


def test_depth_error_propagates_from_statement() -> None:
    tree: dict[str, Any] = {"operator": "equals", "attribute": "organization", "value": "acme"}
    for _ in range(3):
        tree = {"operator": "not", "value": tree}
    evaluator = PolicyEvaluator(conditions=None)
    evaluator.conditions.max_depth = 2
    with pytest.raises(ConditionDepthError):
        evaluator.evaluate([_policy("p", {**ALLOW_ALL, "conditions": [tree]})], "project:read", "a", BAG)
