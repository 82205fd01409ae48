"""Validation of free-form JSON payloads (variables, task data, form data)."""

from __future__ import annotations

import copy
import math
from typing import Any, Union

from ..errors import ValidationError

JSONScalar = Union[str, int, float, bool, None]
JSONValue = Union[JSONScalar, list["JSONValue"], dict[str, "JSONValue"]]
JSONObject = dict[str, JSONValue]

MAX_DEPTH = 32


def _check(value: Any, path: str, depth: int, errors: list[str]) -> None:
    if depth > MAX_DEPTH:
        errors.append(f"{path or '$'} is nested too deeply")
        return
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            errors.append(f"{path or '$'} must be a finite number")
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            _check(item, f"{path}[{index}]", depth + 1, errors)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                errors.append(f"{path or '$'} has a non-string key {key!r}")
                continue
            _check(item, f"{path}.{key}" if path else key, depth + 1, errors)
        return
    errors.append(f"{path or '$'} has unsupported type {type(value).__name__}")


def ensure_json_value(value: Any, *, name: str = "value") -> JSONValue:
    """Return a deep copy of ``value`` after checking it is plain JSON."""

    errors: list[str] = []
    _check(value, "", 0, errors)
    if errors:
        raise ValidationError(f"{name} is not valid JSON data", errors=errors)
    return copy.deepcopy(value)


def ensure_json_object(value: Any, *, name: str = "value") -> JSONObject:
    """Like :func:`ensure_json_value` but requires a JSON object; ``None`` becomes ``{}``."""

    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object")
    return ensure_json_value(value, name=name)  # type: ignore[return-value]


def lookup_path(data: Any, path: str) -> tuple[bool, Any]:
    """Resolve a dotted path inside nested dicts, returning ``(found, value)``."""

    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return False, None
    return True, current
