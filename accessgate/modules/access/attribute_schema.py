"""
Registry of known request attributes.

Definitions are keyed ``<layer>.<name>`` (``subject.organization``,
``resource.sensitivity``, ``environment.time_of_day``). Validation only
checks attributes that have a definition; unknown attributes pass through.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from numbers import Real
from typing import Any

from pydantic import BaseModel, Field

from accessgate.modules.access.attributes import AttributeBag
from accessgate.modules.access.errors import InvalidRequestAttributesError
from accessgate.modules.access.schemas import AccessRequest


class AttributeType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"


class AttributeDefinition(BaseModel):
    name: str
    type: AttributeType
    required: bool = False
    description: str = ""
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    enum: list[Any] | None = Field(default=None)


DEFAULT_DEFINITIONS: tuple[AttributeDefinition, ...] = (
    AttributeDefinition(
        name="subject.roles",
        type=AttributeType.ARRAY,
        description="Roles held by the subject",
    ),
    AttributeDefinition(
        name="subject.organization",
        type=AttributeType.STRING,
        description="Organization the subject belongs to",
    ),
    AttributeDefinition(
        name="subject.environment",
        type=AttributeType.STRING,
        description="Deployment environment of the subject",
        enum=["production", "staging", "development"],
    ),
    AttributeDefinition(
        name="resource.type",
        type=AttributeType.STRING,
        required=True,
        description="Type of the resource being accessed",
    ),
    AttributeDefinition(
        name="resource.sensitivity",
        type=AttributeType.STRING,
        description="Sensitivity classification of the resource",
        enum=["public", "internal", "confidential", "restricted"],
    ),
    AttributeDefinition(
        name="environment.time_of_day",
        type=AttributeType.NUMBER,
        description="Hour of day (0-23)",
        min=0,
        max=23,
    ),
    AttributeDefinition(
        name="environment.day_of_week",
        type=AttributeType.NUMBER,
        description="Day of week (0-6, Sunday is 0)",
        min=0,
        max=6,
    ),
)


def _value_is_valid(value: Any, definition: AttributeDefinition) -> bool:
    if definition.type is AttributeType.STRING:
        if not isinstance(value, str):
            return False
        if definition.pattern and not re.search(definition.pattern, value):
            return False
        if definition.enum is not None and value not in definition.enum:
            return False
    elif definition.type is AttributeType.NUMBER:
        if not isinstance(value, Real) or isinstance(value, bool):
            return False
        if definition.min is not None and value < definition.min:
            return False
        if definition.max is not None and value > definition.max:
            return False
    elif definition.type is AttributeType.BOOLEAN:
        return isinstance(value, bool)
    elif definition.type is AttributeType.DATE:
        return isinstance(value, datetime)
    elif definition.type is AttributeType.ARRAY:
        return isinstance(value, list | tuple)
    return True


class AttributeRegistry:
    """Mutable set of attribute definitions used to validate requests."""

    def __init__(self, definitions: tuple[AttributeDefinition, ...] = DEFAULT_DEFINITIONS) -> None:
        self._definitions: dict[str, AttributeDefinition] = {d.name: d for d in definitions}

    def add_definition(self, definition: AttributeDefinition) -> None:
        self._definitions[definition.name] = definition

    def remove_definition(self, name: str) -> None:
        self._definitions.pop(name, None)

    def get_definition(self, name: str) -> AttributeDefinition | None:
        return self._definitions.get(name)

    def definitions(self) -> list[AttributeDefinition]:
        return list(self._definitions.values())

    def validate(self, request: AccessRequest, bag: AttributeBag | None = None) -> None:
        """Raise ``InvalidRequestAttributesError`` listing every violated definition."""
        bag = bag or AttributeBag.from_request(request)
        problems: list[str] = []
        for name, definition in self._definitions.items():
            layer_name, _, attribute = name.partition(".")
            layer = bag.layer(layer_name) if layer_name in ("subject", "resource", "environment") else {}
            value = layer.get(attribute)
            if value is None:
                if definition.required:
                    problems.append(f"Required attribute {name} is missing")
                continue
            if not _value_is_valid(value, definition):
                problems.append(f"Invalid value for attribute {name}")
        if problems:
            raise InvalidRequestAttributesError("; ".join(problems))
