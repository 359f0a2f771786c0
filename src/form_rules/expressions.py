from __future__ import annotations

import ast
import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Callable

from .models import Calculation

NUMERIC_STRING_PATTERN = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$")
PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}\s]+)\}\}")

logger = logging.getLogger(__name__)


def _round(value: float, digits: float = 0) -> float:
    return round(value, int(digits))


ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "max": max,
    "min": min,
    "round": _round,
    "sqrt": math.sqrt,
}

ALLOWED_NODES = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.Call,
)


class UnsafeExpressionError(ValueError):
    """Raised when the expression includes unsafe syntax."""


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, compiled expression that can be reused safely."""

    source: str
    code: Any


@dataclass(slots=True, frozen=True)
class ExpressionValidation:
    valid: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class _ReferencedVariableVisitor(ast.NodeVisitor):
    """Collects variable names depth-first, which is source order for arithmetic."""

    def __init__(self) -> None:
        self.referenced_variables: list[str] = []

    def visit_Call(self, node: ast.Call) -> Any:
        # The callee is a whitelisted function, not a field reference.
        for arg in node.args:
            self.visit(arg)
        for keyword in node.keywords:
            self.visit(keyword.value)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id not in self.referenced_variables:
            self.referenced_variables.append(node.id)


def _validate_ast(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
                raise UnsafeExpressionError("Unsupported function call")
            if node.keywords:
                raise UnsafeExpressionError("Keyword arguments are not supported")
        if isinstance(node, ast.Constant) and (
            isinstance(node.value, bool) or not isinstance(node.value, int | float)
        ):
            raise UnsafeExpressionError(f"Unsupported literal: {node.value!r}")


def parse_expression(expression: str) -> ast.Expression:
    if not expression.strip():
        raise SyntaxError("Expression is empty")
    tree = ast.parse(expression.strip(), mode="eval")
    _validate_ast(tree)
    return tree


class _FloatLiterals(ast.NodeTransformer):
    def visit_Constant(self, node: ast.Constant) -> Any:
        if isinstance(node.value, int) and not isinstance(node.value, bool):
            return ast.copy_location(ast.Constant(value=float(node.value)), node)
        return node


def compile_expression(expression: str) -> ExpressionProgram:
    # Arithmetic runs on floats only, so ** cannot build unbounded integers.
    tree = ast.fix_missing_locations(_FloatLiterals().visit(parse_expression(expression)))
    return ExpressionProgram(source=expression, code=compile(tree, "<calculation>", "eval"))


def evaluate_program(program: ExpressionProgram, scope: dict[str, Any]) -> Any:
    return eval(program.code, {"__builtins__": {}, **ALLOWED_FUNCTIONS}, dict(scope))


def extract_expression_variables(expression: str) -> list[str]:
    """Variables referenced by an expression, unique and in order of first appearance.

    Raises ``SyntaxError`` or ``UnsafeExpressionError`` when the expression
    cannot be parsed.
    """
    tree = parse_expression(expression)
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    return visitor.referenced_variables


def _parser_message(exc: Exception) -> str:
    if isinstance(exc, SyntaxError) and exc.msg:
        if exc.offset and exc.msg != "Expression is empty":
            return f"{exc.msg} (char {exc.offset})"
        return exc.msg
    return str(exc)


def validate_expression(expression: str, available_field_keys: Iterable[str]) -> ExpressionValidation:
    try:
        referenced = extract_expression_variables(expression)
    except (SyntaxError, ValueError, RecursionError) as exc:
        return ExpressionValidation(valid=False, error=_parser_message(exc))

    available = set(available_field_keys)
    unknown = [name for name in referenced if name not in available]
    if unknown:
        return ExpressionValidation(valid=False, error=f"Unknown fields: {', '.join(unknown)}")
    return ExpressionValidation(valid=True)


def extract_dependencies(expression: str) -> list[str]:
    try:
        return extract_expression_variables(expression)
    except (SyntaxError, ValueError, RecursionError):
        return []


def extract_template_placeholders(expression: str) -> list[str]:
    """Field keys named by ``{{key}}`` placeholders, unique and in order."""
    return list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(expression)))


def coerce_scope_value(value: Any) -> Any:
    """Scope value for one dependency: missing is 0, numeric text and ints become floats."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return float(value)
    if isinstance(value, str) and NUMERIC_STRING_PATTERN.fullmatch(value):
        return float(value)
    return value


def display_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(display_string(item) for item in value)
    return str(value)


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def _render_template(calculation: Calculation, snapshot: Mapping[str, Any]) -> str:
    dependencies = set(calculation.dependencies)

    # Single pass: substituted values are never scanned for placeholders again.
    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in dependencies:
            return match.group(0)
        return display_string(snapshot.get(key))

    return PLACEHOLDER_PATTERN.sub(substitute, calculation.expression)


def evaluate_calculation(calculation: Calculation, snapshot: Mapping[str, Any]) -> float | int | str | None:
    """Compute a derived field value; any failure degrades to ``None``."""
    if not calculation.expression:
        return None

    try:
        if calculation.type == "arithmetic":
            scope = {dependency: coerce_scope_value(snapshot.get(dependency)) for dependency in calculation.dependencies}
            result = evaluate_program(compile_expression(calculation.expression), scope)
            return result if _is_finite_number(result) else None
        if calculation.type == "concatenation":
            return _render_template(calculation, snapshot)
    except Exception as exc:  # noqa: BLE001
        logger.debug(
            "calculation_failed",
            extra={"expression": calculation.expression, "type": calculation.type, "error": str(exc)},
        )
        return None

    logger.debug("calculation_type_unsupported", extra={"type": calculation.type})
    return None
