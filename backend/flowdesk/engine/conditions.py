"""JSON condition expressions attached to workflow connections.

A condition is either a bare string, which is shorthand for
``{"var": "outcome", "op": "eq", "value": <string>}``, or a JSON object:

* ``{"var": "amount", "op": "gt", "value": 1000}``
* ``{"all": [cond, ...]}``, ``{"any": [cond, ...]}``, ``{"not": cond}``

Conditions may also be given as JSON text, which is how the form builder
stores them.
"""

from __future__ import annotations

import json
import operator
from collections.abc import Callable, Mapping
from typing import Any

from .values import lookup_path

OUTCOME_VARIABLE = "outcome"


class ConditionError(ValueError):
    """Raised when a condition expression cannot be parsed."""


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, (str, list, tuple, dict)):
        try:
            return right in left
        except TypeError:
            return False
    return False


def _member(left: Any, right: Any) -> bool:
    return isinstance(right, (list, tuple)) and left in right


def _ordered(func: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if isinstance(left, bool) or isinstance(right, bool):
            return False
        try:
            return bool(func(left, right))
        except TypeError:
            return False

    return compare


_BINARY_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": _ordered(operator.gt),
    "gte": _ordered(operator.ge),
    "lt": _ordered(operator.lt),
    "lte": _ordered(operator.le),
    "in": _member,
    "not_in": lambda left, right: isinstance(right, (list, tuple)) and left not in right,
    "contains": _contains,
}
_UNARY_OPERATORS = {"exists", "truthy"}

OPERATORS = frozenset(_BINARY_OPERATORS) | _UNARY_OPERATORS


def parse_condition(raw: Any) -> dict[str, Any] | None:
    """Normalise a raw condition into its object form; ``None`` means unconditional."""

    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        if text[0] in "{[\"":
            try:
                decoded = json.loads(text)
            except ValueError as exc:
                raise ConditionError(f"condition is not valid JSON: {exc}") from exc
            return parse_condition(decoded)
        return {"var": OUTCOME_VARIABLE, "op": "eq", "value": text}
    if not isinstance(raw, Mapping):
        raise ConditionError("condition must be a string or an object")
    return _normalize(raw)


def _normalize(node: Mapping[str, Any]) -> dict[str, Any]:
    if "all" in node or "any" in node:
        key = "all" if "all" in node else "any"
        items = node[key]
        if not isinstance(items, list) or not items:
            raise ConditionError(f"'{key}' needs a non-empty list of conditions")
        return {key: [_normalize_child(item) for item in items]}

    if "not" in node:
        return {"not": _normalize_child(node["not"])}

    variable = node.get("var", node.get("variable"))
    if not isinstance(variable, str) or not variable.strip():
        raise ConditionError("condition needs a 'var' naming a variable")

    op = node.get("op", node.get("operator", "eq"))
    if op not in OPERATORS:
        raise ConditionError(f"unknown condition operator {op!r}")

    normalized: dict[str, Any] = {"var": variable.strip(), "op": op}
    if op not in _UNARY_OPERATORS:
        if "value" not in node:
            raise ConditionError(f"operator {op!r} needs a 'value'")
        normalized["value"] = node["value"]
    return normalized


def _normalize_child(item: Any) -> dict[str, Any]:
    if isinstance(item, str):
        parsed = parse_condition(item)
        if parsed is None:
            raise ConditionError("nested condition must not be empty")
        return parsed
    if not isinstance(item, Mapping):
        raise ConditionError("nested condition must be an object")
    return _normalize(item)


def evaluate(condition: Mapping[str, Any] | None, variables: Mapping[str, Any]) -> bool:
    """Evaluate a normalised condition against the instance variables."""

    if condition is None:
        return True
    if "all" in condition:
        return all(evaluate(child, variables) for child in condition["all"])
    if "any" in condition:
        return any(evaluate(child, variables) for child in condition["any"])
    if "not" in condition:
        return not evaluate(condition["not"], variables)

    found, actual = lookup_path(variables, condition["var"])
    op = condition["op"]
    if op == "exists":
        return found
    if not found:
        return False
    if op == "truthy":
        return bool(actual)
    return _BINARY_OPERATORS[op](actual, condition["value"])
