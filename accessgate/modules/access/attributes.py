"""
Attribute bag and single-condition evaluation.

A request is flattened into one lookup table built from four layers in
priority order: subject, resource, environment, context. On a key
collision the earlier layer wins. Attributes can also be addressed with
a layer prefix (``subject.organization``, ``resource.id``) or with a
dotted path into nested mappings (``custom.region``).
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from functools import lru_cache
from numbers import Real
from typing import Any

from accessgate.modules.access.errors import InvalidConditionError
from accessgate.modules.access.schemas import (
    AccessRequest,
    ConditionOperator,
    LeafCondition,
)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

LAYER_NAMES = ("subject", "resource", "environment", "context")


def _layer(model_dump: dict[str, Any]) -> dict[str, Any]:
    custom = model_dump.pop("custom_attributes", None) or {}
    layer = {key: value for key, value in model_dump.items() if value is not None}
    for key, value in custom.items():
        layer.setdefault(key, value)
    return layer


class AttributeBag:
    """Read-only view over the attribute layers of one request."""

    def __init__(self, layers: Mapping[str, Mapping[str, Any]]) -> None:
        self._layers = {name: dict(layers.get(name) or {}) for name in LAYER_NAMES}
        flat: dict[str, Any] = {}
        for name in LAYER_NAMES:
            for key, value in self._layers[name].items():
                flat.setdefault(key, value)
        self._flat = flat

    @classmethod
    def from_request(cls, request: AccessRequest) -> AttributeBag:
        return cls(
            {
                "subject": _layer(request.subject.model_dump()),
                "resource": _layer(request.resource.model_dump()),
                "environment": _layer(request.environment.model_dump()),
                "context": dict(request.context),
            }
        )

    def layer(self, name: str) -> dict[str, Any]:
        return self._layers[name]

    def resolve(self, path: str) -> Any:
        """Return the attribute at ``path`` or ``MISSING``. ``None`` counts as missing."""
        if path in self._flat:
            return _present(self._flat[path])

        head, sep, rest = path.partition(".")
        if sep and head in self._layers:
            return _present(_navigate(self._layers[head], rest))
        if sep:
            return _present(_navigate(self._flat, path))
        return MISSING

    def as_dict(self) -> dict[str, Any]:
        return dict(self._flat)


def _navigate(root: Mapping[str, Any], path: str) -> Any:
    current: Any = root
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return MISSING
        current = current[part]
    return current


def _present(value: Any) -> Any:
    return MISSING if value is None else value


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (``1 != "1"``, ``True != 1``)."""
    if _is_number(left) and _is_number(right):
        return bool(left == right)
    if type(left) is not type(right):
        return False
    return bool(left == right)


def _numeric(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        if not (_is_number(actual) and _is_number(expected)):
            return False
        return compare(actual, expected)

    return op


def _string(compare: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        if not (isinstance(actual, str) and isinstance(expected, str)):
            return False
        return compare(actual, expected)

    return op


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a MATCHES pattern, raising ``InvalidConditionError`` when it is malformed."""
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise InvalidConditionError(f"Invalid regular expression {pattern!r}: {exc}") from exc


def _matches(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, str):
        raise InvalidConditionError("matches requires a string pattern")
    if not isinstance(actual, str):
        return False
    return compile_pattern(expected).search(actual) is not None


def _require_list(expected: Any, operator: ConditionOperator) -> list[Any]:
    if not isinstance(expected, list | tuple | set | frozenset):
        raise InvalidConditionError(f"{operator.value} requires an array value")
    return list(expected)


def _in(actual: Any, expected: Any) -> bool:
    return any(strict_equals(actual, item) for item in _require_list(expected, ConditionOperator.IN))


def _not_in(actual: Any, expected: Any) -> bool:
    items = _require_list(expected, ConditionOperator.NOT_IN)
    return not any(strict_equals(actual, item) for item in items)


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: strict_equals,
    ConditionOperator.NOT_EQUALS: lambda a, e: not strict_equals(a, e),
    ConditionOperator.GREATER_THAN: _numeric(lambda a, e: a > e),
    ConditionOperator.LESS_THAN: _numeric(lambda a, e: a < e),
    ConditionOperator.GREATER_THAN_EQUALS: _numeric(lambda a, e: a >= e),
    ConditionOperator.LESS_THAN_EQUALS: _numeric(lambda a, e: a <= e),
    ConditionOperator.STARTS_WITH: _string(lambda a, e: a.startswith(e)),
    ConditionOperator.ENDS_WITH: _string(lambda a, e: a.endswith(e)),
    ConditionOperator.CONTAINS: _string(lambda a, e: e in a),
    ConditionOperator.NOT_CONTAINS: _string(lambda a, e: e not in a),
    ConditionOperator.MATCHES: _matches,
    ConditionOperator.IN: _in,
    ConditionOperator.NOT_IN: _not_in,
}


def apply_operator(operator: ConditionOperator | str, actual: Any, expected: Any) -> bool:
    """Apply a leaf operator to a present attribute value."""
    try:
        op = ConditionOperator(operator)
    except ValueError as exc:
        raise InvalidConditionError(f"Unknown operator {operator!r}") from exc
    handler = _OPERATORS.get(op)
    if handler is None:
        raise InvalidConditionError(f"{op.value} is not an attribute operator")
    return handler(actual, expected)


def evaluate_attribute(condition: LeafCondition, bag: AttributeBag) -> bool:
    """
    Evaluate one leaf condition against the attribute bag.

    A missing attribute makes the condition false regardless of operator
    and ``negate``; only an explicit ``not`` node can turn absence into a
    grant.
    """
    actual = bag.resolve(condition.attribute)
    if actual is MISSING:
        return False
    result = apply_operator(condition.operator, actual, condition.value)
    return not result if condition.negate else result


def validate_leaf(condition: LeafCondition) -> None:
    """Reject leaf conditions that can never be evaluated."""
    op = ConditionOperator(condition.operator)
    if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        _require_list(condition.value, op)
    elif op is ConditionOperator.MATCHES:
        if not isinstance(condition.value, str):
            raise InvalidConditionError("matches requires a string pattern")
        compile_pattern(condition.value)
