from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .conditions import (
    get_field_dependencies,
    get_field_dependents,
    resolve_visible_fields,
    validate_no_dependency_cycles,
)
from .expressions import (
    evaluate_calculation,
    extract_dependencies,
    extract_template_placeholders,
    validate_expression,
)
from .models import (
    CALCULATION_TYPES,
    CONDITION_OPERATORS,
    LOGIC_OPERATORS,
    Calculation,
    FieldDescriptor,
    SchemaError,
)

NUMERIC_FIELD_TYPES = {"number", "integer"}
BOOLEAN_FIELD_TYPES = {"boolean", "checkbox"}

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FormSchema:
    fields: tuple[FieldDescriptor, ...]

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for form_field in self.fields:
            if form_field.key in seen:
                raise SchemaError(f"duplicate field key: {form_field.key}")
            seen.add(form_field.key)

    @classmethod
    def from_fields(cls, fields: list[Mapping[str, Any]]) -> FormSchema:
        if not isinstance(fields, list):
            raise SchemaError("fields must be a list")
        return cls(fields=tuple(FieldDescriptor.from_dict(item) for item in fields))

    @classmethod
    def from_json_schema(cls, json_schema: Mapping[str, Any]) -> FormSchema:
        """Read the request-card JSON Schema layout: ``properties`` in order plus ``required``."""
        if not isinstance(json_schema, Mapping):
            raise SchemaError("schema must be an object")
        properties = json_schema.get("properties") or {}
        if not isinstance(properties, Mapping):
            raise SchemaError("schema properties must be an object")
        required = json_schema.get("required") or []
        if not isinstance(required, list):
            raise SchemaError("schema required must be a list")

        fields: list[FieldDescriptor] = []
        for key, prop in properties.items():
            if not isinstance(prop, Mapping):
                raise SchemaError(f"property {key} must be an object")
            fields.append(FieldDescriptor.from_dict({**prop, "required": key in required}, key=str(key)))
        return cls(fields=tuple(fields))

    def __iter__(self) -> Iterator[FieldDescriptor]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def keys(self) -> list[str]:
        return [form_field.key for form_field in self.fields]

    def field(self, key: str) -> FieldDescriptor | None:
        return next((form_field for form_field in self.fields if form_field.key == key), None)


@dataclass(slots=True, frozen=True)
class SchemaIssue:
    field: str
    message: str


@dataclass(slots=True)
class SchemaValidationResult:
    valid: bool
    errors: list[SchemaIssue] = field(default_factory=list)
    cycle: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [{"field": issue.field, "message": issue.message} for issue in self.errors],
            "cycle": list(self.cycle),
        }


@dataclass(slots=True)
class FormEvaluation:
    visible_fields: set[str]
    computed_values: dict[str, Any]


def build_calculation(calculation_type: str, expression: str) -> Calculation:
    if calculation_type not in CALCULATION_TYPES:
        raise SchemaError(f"unsupported calculation type: {calculation_type}")
    if calculation_type == "concatenation":
        dependencies = extract_template_placeholders(expression)
    else:
        dependencies = extract_dependencies(expression)
    return Calculation(type=calculation_type, expression=expression, dependencies=tuple(dependencies))


def _empty_value(form_field: FieldDescriptor) -> Any:
    if form_field.type in NUMERIC_FIELD_TYPES:
        return 0 if form_field.required else None
    if form_field.type in BOOLEAN_FIELD_TYPES:
        return False
    if form_field.type == "array":
        return []
    return "" if form_field.required else None


def default_values(schema: FormSchema, defaults: Mapping[str, Any] | None = None) -> dict[str, Any]:
    provided = defaults or {}
    values: dict[str, Any] = {}
    for form_field in schema:
        if provided.get(form_field.key) is not None:
            values[form_field.key] = provided[form_field.key]
        elif form_field.default is not None:
            values[form_field.key] = form_field.default
        else:
            values[form_field.key] = _empty_value(form_field)
    return values


def _calculation_issues(form_field: FieldDescriptor, available: list[str]) -> list[SchemaIssue]:
    calculation = form_field.calculation
    if calculation is None:
        return []
    if calculation.type not in CALCULATION_TYPES:
        return [SchemaIssue(form_field.key, f"Unsupported calculation type: {calculation.type}")]

    if calculation.type == "arithmetic":
        validation = validate_expression(calculation.expression, available)
        if not validation.valid:
            return [SchemaIssue(form_field.key, validation.error or "Invalid expression")]
        referenced = extract_dependencies(calculation.expression)
    else:
        referenced = extract_template_placeholders(calculation.expression)
        unknown = [name for name in referenced if name not in available]
        if unknown:
            return [SchemaIssue(form_field.key, f"Unknown fields: {', '.join(unknown)}")]

    if set(referenced) != set(calculation.dependencies):
        return [
            SchemaIssue(
                form_field.key,
                f"Calculation dependencies are stale: expected {', '.join(referenced) or 'none'}",
            )
        ]
    return []


def validate_schema(schema: FormSchema) -> SchemaValidationResult:
    """Authoring-time checks run before a form schema is saved."""
    keys = schema.keys()
    known = set(keys)
    errors: list[SchemaIssue] = []

    for form_field in schema:
        logic = form_field.conditional_logic
        if logic is not None:
            if logic.logic_operator not in LOGIC_OPERATORS:
                errors.append(SchemaIssue(form_field.key, f"Unsupported logic operator: {logic.logic_operator}"))
            for condition in logic.conditions:
                if condition.field not in known:
                    errors.append(SchemaIssue(form_field.key, f'Referenced field "{condition.field}" does not exist'))
                if condition.operator not in CONDITION_OPERATORS:
                    errors.append(SchemaIssue(form_field.key, f"Unsupported condition operator: {condition.operator}"))

        available = [key for key in keys if key != form_field.key]
        errors.extend(_calculation_issues(form_field, available))

    cycle_result = validate_no_dependency_cycles(schema.fields)
    if not cycle_result.valid:
        root = cycle_result.cycle[0] if cycle_result.cycle else ""
        errors.append(SchemaIssue(root, cycle_result.error or "Circular dependency detected"))

    if errors:
        logger.info("schema_validation_failed", extra={"error_count": len(errors), "field_count": len(schema)})
    return SchemaValidationResult(valid=not errors, errors=errors, cycle=list(cycle_result.cycle))


def evaluate_form(schema: FormSchema, snapshot: Mapping[str, Any]) -> FormEvaluation:
    computed_values = {
        form_field.key: evaluate_calculation(form_field.calculation, snapshot)
        for form_field in schema
        if form_field.calculation is not None
    }
    return FormEvaluation(
        visible_fields=resolve_visible_fields(schema.fields, snapshot),
        computed_values=computed_values,
    )


def clear_hidden_values(snapshot: Mapping[str, Any], visible_fields: set[str]) -> dict[str, Any]:
    """Submission payload holding only visible fields; ``snapshot`` is left untouched."""
    return {key: value for key, value in snapshot.items() if key in visible_fields}


def field_impact(schema: FormSchema, field_key: str) -> dict[str, list[str]]:
    return {
        "dependencies": get_field_dependencies(field_key, schema.fields),
        "dependents": get_field_dependents(field_key, schema.fields),
    }
