"""Conditional visibility for form fields.

Conditions compare the snapshot *values* of other fields. They never look at
whether the referenced field is itself visible: a hidden field that still holds
a value keeps satisfying conditions that test that value. Hosts that want
hidden values ignored should drop them first (see ``forms.clear_hidden_values``).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .expressions import display_string
from .models import Condition, ConditionalLogic

MAX_VISIBILITY_PASSES = 10

logger = logging.getLogger(__name__)


class ConditionalField(Protocol):
    @property
    def key(self) -> str: ...

    @property
    def conditional_logic(self) -> ConditionalLogic | None: ...


@dataclass(slots=True, frozen=True)
class DependencyCycleResult:
    valid: bool
    error: str | None = None
    cycle: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid}
        if self.error is not None:
            payload["error"] = self.error
            payload["cycle"] = list(self.cycle)
        return payload


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, int | float) and isinstance(right, int | float):
        return left == right
    if _is_sequence(left) and _is_sequence(right):
        return len(left) == len(right) and all(_strict_equals(a, b) for a, b in zip(left, right, strict=True))
    if type(left) is not type(right):
        return False
    return left == right


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (_is_sequence(value) and len(value) == 0)


def evaluate_condition(condition: Condition, snapshot: Mapping[str, Any]) -> bool:
    field_value = snapshot.get(condition.field)

    operator = condition.operator
    if operator == "equals":
        return _strict_equals(field_value, condition.value)
    if operator == "notEquals":
        return not _strict_equals(field_value, condition.value)
    if operator == "contains":
        if _is_sequence(field_value):
            return any(_strict_equals(item, condition.value) for item in field_value)
        if isinstance(field_value, str) and condition.value is not None:
            return display_string(condition.value) in field_value
        return False
    if operator == "isEmpty":
        return _is_empty(field_value)
    if operator == "isNotEmpty":
        return (
            field_value is not None
            and field_value != ""
            and not (_is_sequence(field_value) and len(field_value) == 0)
        )

    # Unknown operators leave the field visible.
    logger.debug("condition_operator_unsupported", extra={"field": condition.field, "operator": condition.operator})
    return True


def evaluate_conditional_logic(logic: ConditionalLogic | None, snapshot: Mapping[str, Any]) -> bool:
    if logic is None or not logic.conditions:
        return True

    results = [evaluate_condition(condition, snapshot) for condition in logic.conditions]
    if logic.logic_operator == "AND":
        return all(results)
    return any(results)


def resolve_visible_fields(fields: Sequence[ConditionalField], snapshot: Mapping[str, Any]) -> set[str]:
    """Keys of the fields whose conditional logic currently holds.

    Passes repeat until membership stops changing, bounded by
    ``MAX_VISIBILITY_PASSES``. Schemas that pass ``validate_no_dependency_cycles``
    settle well before the bound.
    """
    visible_fields: set[str] = set()

    changed = True
    passes = 0
    while changed and passes < MAX_VISIBILITY_PASSES:
        changed = False
        passes += 1

        for form_field in fields:
            was_visible = form_field.key in visible_fields
            is_visible = evaluate_conditional_logic(form_field.conditional_logic, snapshot)

            if is_visible and not was_visible:
                visible_fields.add(form_field.key)
                changed = True
            elif not is_visible and was_visible:
                visible_fields.discard(form_field.key)
                changed = True

    if changed:
        logger.warning(
            "visibility_iteration_cap_reached",
            extra={"passes": passes, "field_count": len(fields), "visible_count": len(visible_fields)},
        )
    return visible_fields


def build_dependency_graph(fields: Sequence[ConditionalField]) -> dict[str, list[str]]:
    return {
        form_field.key: form_field.conditional_logic.referenced_fields()
        for form_field in fields
        if form_field.conditional_logic is not None
    }


def validate_no_dependency_cycles(fields: Sequence[ConditionalField]) -> DependencyCycleResult:
    graph = build_dependency_graph(fields)
    visited: set[str] = set()
    recursion_stack: set[str] = set()
    path: list[str] = []

    def find_cycle(root: str) -> list[str] | None:
        # Explicit stack of (node, remaining neighbors) so long chains cannot exhaust recursion.
        visited.add(root)
        recursion_stack.add(root)
        path.append(root)
        stack: list[tuple[str, Iterator[str]]] = [(root, iter(graph.get(root, [])))]

        while stack:
            node, neighbors = stack[-1]
            neighbor = next(neighbors, None)
            if neighbor is None:
                stack.pop()
                recursion_stack.discard(node)
                path.pop()
                continue
            if neighbor not in visited:
                visited.add(neighbor)
                recursion_stack.add(neighbor)
                path.append(neighbor)
                stack.append((neighbor, iter(graph.get(neighbor, []))))
            elif neighbor in recursion_stack:
                return path[path.index(neighbor) :]

        return None

    for form_field in fields:
        if form_field.key in visited:
            continue
        cycle = find_cycle(form_field.key)
        if cycle is not None:
            logger.info("dependency_cycle_detected", extra={"field": form_field.key, "cycle": cycle})
            return DependencyCycleResult(
                valid=False,
                error=f"Circular dependency detected involving field: {form_field.key}",
                cycle=cycle,
            )

    return DependencyCycleResult(valid=True)


def get_field_dependencies(field_key: str, fields: Sequence[ConditionalField]) -> list[str]:
    """Every field that ``field_key``'s visibility depends on, directly or through other fields."""
    graph = build_dependency_graph(fields)
    dependencies: list[str] = []
    expanded: set[str] = set()
    pending = [field_key]

    while pending:
        current = pending.pop(0)
        if current in expanded:
            continue
        expanded.add(current)
        for dependency in graph.get(current, []):
            if dependency not in dependencies:
                dependencies.append(dependency)
            pending.append(dependency)

    return dependencies


def get_field_dependents(field_key: str, fields: Sequence[ConditionalField]) -> list[str]:
    return [
        form_field.key
        for form_field in fields
        if form_field.conditional_logic is not None
        and any(condition.field == field_key for condition in form_field.conditional_logic.conditions)
    ]
