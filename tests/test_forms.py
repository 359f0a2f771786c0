import pytest

from form_rules.forms import (
    FormSchema,
    build_calculation,
    clear_hidden_values,
    default_values,
    evaluate_form,
    field_impact,
    validate_schema,
)
from form_rules.models import Calculation, SchemaError

REQUEST_CARD_SCHEMA = {
    "type": "object",
    "properties": {
        "device": {"type": "string", "title": "Device", "enum": ["laptop", "monitor"]},
        "quantity": {"type": "number", "title": "Quantity"},
        "unit_price": {"type": "number", "title": "Unit price", "default": 1200},
        "total": {
            "type": "number",
            "title": "Total",
            "calculation": {
                "type": "arithmetic",
                "expression": "quantity * unit_price",
                "dependencies": ["quantity", "unit_price"],
            },
        },
        "model": {
            "type": "string",
            "title": "Laptop model",
            "conditionalLogic": {
                "conditions": [{"field": "device", "operator": "equals", "value": "laptop"}],
                "logicOperator": "AND",
            },
        },
        "docking": {
            "type": "boolean",
            "title": "Docking station",
            "conditionalLogic": {
                "conditions": [{"field": "model", "operator": "isNotEmpty"}],
                "logicOperator": "AND",
            },
        },
        "accessories": {"type": "array", "title": "Accessories"},
        "summary": {
            "type": "string",
            "title": "Summary",
            "calculation": {
                "type": "concatenation",
                "expression": "{{quantity}} x {{device}}",
                "dependencies": ["quantity", "device"],
            },
        },
    },
    "required": ["device", "quantity"],
}


def field(key: str, **extra) -> dict:
    return {"key": key, **extra}


def test_from_json_schema_keeps_property_order_and_required_flags() -> None:
    schema = FormSchema.from_json_schema(REQUEST_CARD_SCHEMA)
    assert schema.keys() == ["device", "quantity", "unit_price", "total", "model", "docking", "accessories", "summary"]
    assert schema.field("device").required is True
    assert schema.field("model").required is False
    assert schema.field("total").calculation == Calculation(
        type="arithmetic",
        expression="quantity * unit_price",
        dependencies=("quantity", "unit_price"),
    )
    assert schema.field("model").conditional_logic.conditions[0].value == "laptop"
    assert schema.field("missing") is None


def test_from_fields_rejects_duplicate_keys() -> None:
    with pytest.raises(SchemaError, match="duplicate field key"):
        FormSchema.from_fields([field("a"), field("a")])


@pytest.mark.parametrize(
    "payload",
    [
        [field("")],
        [field("a", conditionalLogic={"conditions": [{"operator": "equals"}]})],
        [field("a", conditionalLogic={"conditions": "nope"})],
        [field("a", calculation={"type": "arithmetic", "expression": "b", "dependencies": "b"})],
        ["not-an-object"],
    ],
)
def test_from_fields_rejects_malformed_payloads(payload) -> None:
    with pytest.raises(SchemaError):
        FormSchema.from_fields(payload)


def test_from_json_schema_rejects_non_object_properties() -> None:
    with pytest.raises(SchemaError):
        FormSchema.from_json_schema({"properties": {"a": "string"}})


def test_descriptor_round_trips_to_builder_json() -> None:
    payload = field(
        "model",
        title="Laptop model",
        type="string",
        conditionalLogic={
            "conditions": [{"field": "device", "operator": "equals", "value": "laptop"}],
            "logicOperator": "OR",
        },
    )
    schema = FormSchema.from_fields([payload])
    assert schema.fields[0].to_dict() == payload


def test_build_calculation_derives_dependencies() -> None:
    assert build_calculation("arithmetic", "a * b + a").dependencies == ("a", "b")
    assert build_calculation("concatenation", "{{first}} {{last}}").dependencies == ("first", "last")
    assert build_calculation("arithmetic", "a * (").dependencies == ()


def test_build_calculation_rejects_unknown_type() -> None:
    with pytest.raises(SchemaError):
        build_calculation("lookup", "a")


def test_default_values_follow_field_types() -> None:
    schema = FormSchema.from_json_schema(REQUEST_CARD_SCHEMA)
    values = default_values(schema, {"device": "monitor"})
    assert values == {
        "device": "monitor",
        "quantity": 0,
        "unit_price": 1200,
        "total": None,
        "model": None,
        "docking": False,
        "accessories": [],
        "summary": None,
    }


def test_valid_schema_passes_authoring_checks() -> None:
    result = validate_schema(FormSchema.from_json_schema(REQUEST_CARD_SCHEMA))
    assert result.valid is True
    assert result.errors == []
    assert result.cycle == []


def test_schema_validation_reports_each_problem() -> None:
    schema = FormSchema.from_fields(
        [
            field("price"),
            field("total", calculation={"type": "arithmetic", "expression": "total * price", "dependencies": ["total", "price"]}),
            field("label", calculation={"type": "concatenation", "expression": "{{name}}", "dependencies": ["name"]}),
            field("stale", calculation={"type": "arithmetic", "expression": "price * 2", "dependencies": []}),
            field("kind", calculation={"type": "lookup", "expression": "price"}),
            field(
                "notes",
                conditionalLogic={
                    "conditions": [
                        {"field": "ghost", "operator": "equals", "value": 1},
                        {"field": "price", "operator": "greaterThan", "value": 1},
                    ],
                    "logicOperator": "XOR",
                },
            ),
        ]
    )

    result = validate_schema(schema)
    messages = {(issue.field, issue.message) for issue in result.errors}

    assert result.valid is False
    assert ("total", "Unknown fields: total") in messages
    assert ("label", "Unknown fields: name") in messages
    assert ("stale", "Calculation dependencies are stale: expected price") in messages
    assert ("kind", "Unsupported calculation type: lookup") in messages
    assert ("notes", 'Referenced field "ghost" does not exist') in messages
    assert ("notes", "Unsupported condition operator: greaterThan") in messages
    assert ("notes", "Unsupported logic operator: XOR") in messages


def test_schema_validation_reports_cycles() -> None:
    schema = FormSchema.from_fields(
        [
            field("X", conditionalLogic={"conditions": [{"field": "Y", "operator": "isNotEmpty"}]}),
            field("Y", conditionalLogic={"conditions": [{"field": "X", "operator": "isNotEmpty"}]}),
        ]
    )
    result = validate_schema(schema)
    assert result.valid is False
    assert result.cycle == ["X", "Y"]
    assert result.to_dict()["errors"] == [
        {"field": "X", "message": "Circular dependency detected involving field: X"}
    ]


def test_evaluate_form_computes_values_and_visibility() -> None:
    schema = FormSchema.from_json_schema(REQUEST_CARD_SCHEMA)
    evaluation = evaluate_form(
        schema,
        {"device": "laptop", "quantity": "2", "unit_price": 1200, "model": "X1"},
    )

    assert evaluation.visible_fields == {
        "device",
        "quantity",
        "unit_price",
        "total",
        "model",
        "docking",
        "accessories",
        "summary",
    }
    assert evaluation.computed_values == {"total": 2400, "summary": "2 x laptop"}


def test_evaluate_form_hides_conditional_fields() -> None:
    schema = FormSchema.from_json_schema(REQUEST_CARD_SCHEMA)
    snapshot = {"device": "monitor", "quantity": 1}
    evaluation = evaluate_form(schema, snapshot)

    assert "model" not in evaluation.visible_fields
    assert "docking" not in evaluation.visible_fields
    assert evaluation.computed_values["total"] == 0
    assert snapshot == {"device": "monitor", "quantity": 1}


def test_clear_hidden_values_returns_new_mapping() -> None:
    snapshot = {"device": "monitor", "model": "X1", "quantity": 1}
    cleaned = clear_hidden_values(snapshot, {"device", "quantity"})
    assert cleaned == {"device": "monitor", "quantity": 1}
    assert snapshot["model"] == "X1"


def test_field_impact() -> None:
    schema = FormSchema.from_json_schema(REQUEST_CARD_SCHEMA)
    assert field_impact(schema, "docking") == {"dependencies": ["model", "device"], "dependents": []}
    assert field_impact(schema, "device") == {"dependencies": [], "dependents": ["model"]}


def test_schema_validation_handles_long_dependency_chains() -> None:
    fields = [
        field(f"f{i}", conditionalLogic={"conditions": [{"field": f"f{i + 1}", "operator": "isNotEmpty"}]})
        for i in range(1500)
    ]
    result = validate_schema(FormSchema.from_fields([*fields, field("f1500")]))
    assert result.valid is True
    assert result.cycle == []
