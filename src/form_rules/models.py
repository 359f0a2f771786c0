from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

CALCULATION_TYPES = ("arithmetic", "concatenation")
CONDITION_OPERATORS = ("equals", "notEquals", "contains", "isEmpty", "isNotEmpty")
LOGIC_OPERATORS = ("AND", "OR")


class SchemaError(ValueError):
    """Raised when a field schema payload cannot be read."""


@dataclass(slots=True, frozen=True)
class Calculation:
    type: str
    expression: str
    dependencies: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Calculation:
        if not isinstance(payload, Mapping):
            raise SchemaError("calculation must be an object")
        raw_dependencies = payload.get("dependencies") or []
        if isinstance(raw_dependencies, str) or not isinstance(raw_dependencies, (list, tuple)):
            raise SchemaError("calculation dependencies must be a list of field keys")
        return cls(
            type=str(payload.get("type") or "arithmetic"),
            expression=str(payload.get("expression") or ""),
            dependencies=tuple(dict.fromkeys(str(dep) for dep in raw_dependencies)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "expression": self.expression, "dependencies": list(self.dependencies)}


@dataclass(slots=True, frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Condition:
        if not isinstance(payload, Mapping):
            raise SchemaError("condition must be an object")
        field_key = str(payload.get("field") or "").strip()
        if not field_key:
            raise SchemaError("condition requires a field")
        return cls(field=field_key, operator=str(payload.get("operator") or ""), value=payload.get("value"))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"field": self.field, "operator": self.operator}
        if self.value is not None:
            payload["value"] = self.value
        return payload


@dataclass(slots=True, frozen=True)
class ConditionalLogic:
    conditions: tuple[Condition, ...] = ()
    logic_operator: str = "AND"

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConditionalLogic:
        if not isinstance(payload, Mapping):
            raise SchemaError("conditionalLogic must be an object")
        raw_conditions = payload.get("conditions") or []
        if not isinstance(raw_conditions, (list, tuple)):
            raise SchemaError("conditionalLogic.conditions must be a list")
        return cls(
            conditions=tuple(Condition.from_dict(item) for item in raw_conditions),
            logic_operator=str(payload.get("logicOperator") or "AND"),
        )

    def referenced_fields(self) -> list[str]:
        return list(dict.fromkeys(condition.field for condition in self.conditions))

    def to_dict(self) -> dict[str, Any]:
        return {
            "conditions": [condition.to_dict() for condition in self.conditions],
            "logicOperator": self.logic_operator,
        }


@dataclass(slots=True, frozen=True)
class FieldDescriptor:
    key: str
    title: str = ""
    type: str = "string"
    required: bool = False
    default: Any = None
    calculation: Calculation | None = None
    conditional_logic: ConditionalLogic | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], key: str | None = None) -> FieldDescriptor:
        if not isinstance(payload, Mapping):
            raise SchemaError("field must be an object")
        field_key = str(key if key is not None else payload.get("key") or "").strip()
        if not field_key:
            raise SchemaError("field requires a key")

        calculation = payload.get("calculation")
        conditional_logic = payload.get("conditionalLogic")
        return cls(
            key=field_key,
            title=str(payload.get("title") or field_key),
            type=str(payload.get("type") or "string"),
            required=bool(payload.get("required", False)),
            default=payload.get("default"),
            calculation=Calculation.from_dict(calculation) if calculation else None,
            conditional_logic=ConditionalLogic.from_dict(conditional_logic) if conditional_logic else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"key": self.key, "title": self.title, "type": self.type}
        if self.required:
            payload["required"] = True
        if self.default is not None:
            payload["default"] = self.default
        if self.calculation is not None:
            payload["calculation"] = self.calculation.to_dict()
        if self.conditional_logic is not None:
            payload["conditionalLogic"] = self.conditional_logic.to_dict()
        return payload
