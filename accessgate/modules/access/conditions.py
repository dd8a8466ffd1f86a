"""
Condition tree evaluation.

Trees are evaluated recursively with short-circuiting. Depth is bounded
so that a stored policy cannot exhaust the stack; an over-deep tree is a
configuration error rather than a denial.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from accessgate.modules.access.attributes import (
    AttributeBag,
    evaluate_attribute,
    validate_leaf,
)
from accessgate.modules.access.errors import ConditionDepthError, InvalidConditionError
from accessgate.modules.access.schemas import (
    AndCondition,
    Condition,
    LeafCondition,
    NotCondition,
    OrCondition,
    condition_adapter,
)

DEFAULT_MAX_DEPTH = 32


class ConditionEvaluator:
    """Evaluates condition trees against an ``AttributeBag``."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.max_depth = max_depth

    def evaluate(self, condition: Condition, bag: AttributeBag) -> bool:
        return self._evaluate(condition, bag, 1)

    def evaluate_all(self, conditions: Iterable[Condition], bag: AttributeBag) -> bool:
        """True iff every top-level condition holds (implicit AND)."""
        return all(self._evaluate(condition, bag, 1) for condition in conditions)

    def _evaluate(self, condition: Condition, bag: AttributeBag, depth: int) -> bool:
        if depth > self.max_depth:
            raise ConditionDepthError(self.max_depth)

        if isinstance(condition, LeafCondition):
            return evaluate_attribute(condition, bag)
        if isinstance(condition, AndCondition):
            return all(self._evaluate(child, bag, depth + 1) for child in condition.value)
        if isinstance(condition, OrCondition):
            return any(self._evaluate(child, bag, depth + 1) for child in condition.value)
        if isinstance(condition, NotCondition):
            return not self._evaluate(condition.value, bag, depth + 1)
        raise InvalidConditionError(f"Unsupported condition node {type(condition).__name__}")

    def validate(self, condition: Condition) -> None:
        """Check depth, operand shapes and regex patterns without evaluating."""
        self._validate(condition, 1)

    def _validate(self, condition: Condition, depth: int) -> None:
        if depth > self.max_depth:
            raise ConditionDepthError(self.max_depth)
        if isinstance(condition, LeafCondition):
            validate_leaf(condition)
        elif isinstance(condition, AndCondition | OrCondition):
            for child in condition.value:
                self._validate(child, depth + 1)
        elif isinstance(condition, NotCondition):
            self._validate(condition.value, depth + 1)


def parse_condition(raw: Any) -> Condition:
    """Parse a JSON-shaped condition, mapping schema errors to ``InvalidConditionError``."""
    try:
        return condition_adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidConditionError(f"Invalid condition: {exc.errors()[0]['msg']}") from exc
