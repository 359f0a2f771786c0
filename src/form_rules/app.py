from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .expressions import extract_dependencies, validate_expression
from .forms import (
    FormSchema,
    build_calculation,
    evaluate_form,
    field_impact,
    validate_schema,
)
from .models import SchemaError

DEFAULT_MAX_SCHEMA_FIELDS = 500


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("FORM_RULES_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("form_rules").setLevel(level)


def _configure_limits(app: Flask) -> None:
    raw_limit = os.environ.get("FORM_RULES_MAX_SCHEMA_FIELDS", "")
    try:
        limit = int(raw_limit) if raw_limit else DEFAULT_MAX_SCHEMA_FIELDS
    except ValueError:
        app.logger.warning("invalid_config", extra={"setting": "FORM_RULES_MAX_SCHEMA_FIELDS", "value": raw_limit})
        limit = DEFAULT_MAX_SCHEMA_FIELDS
    app.config["MAX_SCHEMA_FIELDS"] = limit


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        return jsonify({"error": "invalid request payload"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(SchemaError)
    def handle_schema_error(error: SchemaError) -> Any:
        app.logger.info("schema_rejected", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(ValueError)
    @app.errorhandler(TypeError)
    def handle_invalid_value(error: ValueError | TypeError) -> Any:
        app.logger.info(
            "invalid_value",
            extra={"path": request.path, "method": request.method, "error_type": type(error).__name__, "error": str(error)},
        )
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        return jsonify({"error": "internal server error"}), 500


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _schema_from_body(app: Flask, body: dict[str, Any]) -> FormSchema:
    if "schema" in body:
        schema = FormSchema.from_json_schema(body["schema"])
    elif "fields" in body:
        schema = FormSchema.from_fields(body["fields"])
    else:
        raise SchemaError("provide schema or fields")

    if len(schema) > app.config["MAX_SCHEMA_FIELDS"]:
        raise SchemaError(f"schema exceeds {app.config['MAX_SCHEMA_FIELDS']} fields")
    return schema


def create_form_rules_app() -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "form-rules")
    _configure_limits(app)
    _configure_error_handlers(app)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/expressions/validate")
    def validate_expression_endpoint() -> Any:
        body = _json_body()
        expression = str(body.get("expression") or "")
        available_fields = body.get("available_fields", [])
        if not isinstance(available_fields, list):
            return jsonify({"error": "available_fields must be a list"}), 400

        validation = validate_expression(expression, [str(key) for key in available_fields])
        return jsonify({**validation.to_dict(), "dependencies": extract_dependencies(expression)})

    @app.post("/api/calculations/build")
    def build_calculation_endpoint() -> Any:
        body = _json_body()
        calculation = build_calculation(str(body.get("type") or "arithmetic"), str(body.get("expression") or ""))
        return jsonify(calculation.to_dict())

    @app.post("/api/forms/evaluate")
    def evaluate_form_endpoint() -> Any:
        body = _json_body()
        values = body.get("values", {})
        if not isinstance(values, dict):
            return jsonify({"error": "values must be an object"}), 400

        schema = _schema_from_body(app, body)
        evaluation = evaluate_form(schema, values)
        app.logger.debug(
            "form_evaluated",
            extra={
                "field_count": len(schema),
                "visible_count": len(evaluation.visible_fields),
                "computed": sorted(evaluation.computed_values),
            },
        )
        return jsonify(
            {
                "visible_fields": [key for key in schema.keys() if key in evaluation.visible_fields],
                "computed_values": evaluation.computed_values,
            }
        )

    @app.post("/api/schemas/validate")
    def validate_schema_endpoint() -> Any:
        body = _json_body()
        result = validate_schema(_schema_from_body(app, body))
        return jsonify(result.to_dict())

    @app.post("/api/schemas/impact")
    def schema_impact_endpoint() -> Any:
        body = _json_body()
        schema = _schema_from_body(app, body)
        field_key = str(body.get("field") or "")
        if schema.field(field_key) is None:
            abort(404, description=f"unknown field: {field_key}")
        return jsonify({"field": field_key, **field_impact(schema, field_key)})

    return app
