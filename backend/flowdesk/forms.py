"""Form definitions: conditional field visibility and submission validation."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from .engine.statuses import SubmissionStatus, is_final_status
from .errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^[\+]?[1-9][\d]{0,15}$")

_MISSING = object()


@dataclass(frozen=True)
class ConditionalRule:
    target_field_id: str
    condition: str
    action: str
    value: Any = _MISSING
    id: str = ""


@dataclass(frozen=True)
class FormField:
    id: str
    type: str = "text"
    label: str = ""
    is_required: bool = False
    options: tuple[str, ...] = ()
    properties: dict[str, Any] = field(default_factory=dict)
    pattern: re.Pattern[str] | None = None
    error_message: str | None = None
    section_id: str | None = None
    order: int = 0


@dataclass(frozen=True)
class FormSettings:
    allow_save_draft: bool = True
    allow_edit_after_submit: bool = False
    require_signature: bool = False


@dataclass(frozen=True)
class FormDefinition:
    fields: tuple[FormField, ...] = ()
    conditional_rules: tuple[ConditionalRule, ...] = ()
    settings: FormSettings = field(default_factory=FormSettings)


_NUMERIC_PROPERTIES = ("min", "max", "maxLength")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_field(raw: Any, index: int, errors: list[str]) -> FormField | None:
    if not isinstance(raw, Mapping) or not raw.get("id"):
        errors.append(f"fields[{index}] needs an id")
        return None
    where = f"field {raw['id']!r}"

    properties = raw.get("properties") or {}
    if not isinstance(properties, Mapping):
        errors.append(f"{where}: properties must be an object")
        properties = {}
    for key in _NUMERIC_PROPERTIES:
        if properties.get(key) is not None and not _is_number(properties[key]):
            errors.append(f"{where}: properties.{key} must be a number")

    validation = raw.get("validation") or {}
    if not isinstance(validation, Mapping):
        errors.append(f"{where}: validation must be an object")
        validation = {}
    pattern = None
    if validation.get("pattern"):
        try:
            pattern = re.compile(str(validation["pattern"]))
        except re.error as exc:
            errors.append(f"{where}: invalid validation pattern ({exc})")

    order = raw.get("order")
    if order is None:
        order = index
    elif isinstance(order, bool) or not isinstance(order, int):
        errors.append(f"{where}: order must be an integer")
        order = index

    options = raw.get("options") or ()
    if not isinstance(options, (list, tuple)):
        errors.append(f"{where}: options must be a list")
        options = ()

    return FormField(
        id=str(raw["id"]),
        type=str(raw.get("type") or "text"),
        label=str(raw.get("label") or raw["id"]),
        is_required=bool(raw.get("isRequired", raw.get("is_required", False))),
        options=tuple(str(option) for option in options),
        properties=dict(properties),
        pattern=pattern,
        error_message=validation.get("errorMessage"),
        section_id=raw.get("sectionId"),
        order=order,
    )


def parse_form_definition(payload: Mapping[str, Any] | None) -> FormDefinition:
    """Build a :class:`FormDefinition` from the form builder's JSON.

    Malformed field metadata is collected and raised as one
    :class:`ValidationError`, so it never surfaces while validating data.
    """

    payload = payload or {}
    if not isinstance(payload, Mapping):
        raise ValidationError("form definition must be an object")
    errors: list[str] = []

    raw_fields = payload.get("fields") or []
    if not isinstance(raw_fields, list):
        errors.append("form definition fields must be a list")
        raw_fields = []
    fields = [
        parsed
        for index, raw in enumerate(raw_fields)
        if (parsed := _parse_field(raw, index, errors)) is not None
    ]

    rules = [
        ConditionalRule(
            id=str(raw.get("id") or ""),
            target_field_id=str(raw.get("targetFieldId") or raw.get("target_field_id") or ""),
            condition=str(raw.get("condition") or ""),
            action=str(raw.get("action") or ""),
            value=raw.get("value", _MISSING),
        )
        for raw in payload.get("conditionalRules") or payload.get("conditional_rules") or []
        if isinstance(raw, Mapping)
    ]

    raw_settings = payload.get("settings") or {}
    if not isinstance(raw_settings, Mapping):
        errors.append("form settings must be an object")
        raw_settings = {}
    settings = FormSettings(
        allow_save_draft=bool(raw_settings.get("allowSaveDraft", True)),
        allow_edit_after_submit=bool(raw_settings.get("allowEditAfterSubmit", False)),
        require_signature=bool(raw_settings.get("requireSignature", False)),
    )

    if errors:
        raise ValidationError("form definition is invalid", errors=errors)
    return FormDefinition(fields=tuple(fields), conditional_rules=tuple(rules), settings=settings)


def _strict_equal(left: Any, right: Any) -> bool:
    # An absent value only equals another absent value; JSON null is a value.
    if left is _MISSING or right is _MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def hidden_fields(rules: Iterable[ConditionalRule], values: Mapping[str, Any]) -> set[str]:
    """Return the ids of fields hidden by the conditional rules.

    A ``hide`` rule hides its target when the watched field equals the rule
    value; a ``show`` rule hides its target while the watched field differs.
    Rules are evaluated independently against the current values.
    """

    hidden: set[str] = set()
    for rule in rules:
        watched = values.get(rule.condition, _MISSING)
        matches = _strict_equal(watched, rule.value)
        if (rule.action == "hide" and matches) or (rule.action == "show" and not matches):
            hidden.add(rule.target_field_id)
    return hidden


def visible_fields(definition: FormDefinition, values: Mapping[str, Any]) -> list[FormField]:
    hidden = hidden_fields(definition.conditional_rules, values)
    return [item for item in definition.fields if item.id not in hidden]


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _check_field(item: FormField, value: Any) -> str | None:
    if item.type in {"file", "image"}:
        return None

    if item.type == "number":
        if isinstance(value, bool):
            return f"{item.label} must be a number"
        try:
            number = float(value)
        except (TypeError, ValueError):
            return f"{item.label} must be a number"
        minimum = item.properties.get("min")
        maximum = item.properties.get("max")
        if minimum is not None and number < minimum:
            return f"Minimum value is {minimum}"
        if maximum is not None and number > maximum:
            return f"Maximum value is {maximum}"
        return None

    text = value if isinstance(value, str) else str(value)
    if item.type == "email" and not _EMAIL_RE.match(text):
        return "Invalid email format"
    if item.type == "phone" and not _PHONE_RE.match(text):
        return "Invalid phone number"
    if item.type == "url":
        parsed = urlparse(text)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            return "Invalid URL format"
    if item.type in {"dropdown", "radio"} and item.options and text not in item.options:
        return f"{item.label} must be one of the listed options"

    max_length = item.properties.get("maxLength")
    if max_length and len(text) > max_length:
        return f"Maximum {max_length} characters"
    if item.pattern is not None and not item.pattern.search(text):
        return item.error_message or "Invalid format"
    return None


def validate_submission(definition: FormDefinition, data: Mapping[str, Any]) -> list[str]:
    """Validate submitted form data, skipping fields hidden by conditional rules."""

    errors: list[str] = []
    for item in visible_fields(definition, data):
        value = data.get(item.id)
        if _is_blank(value):
            if item.is_required:
                errors.append(f"{item.label} is required")
            continue
        problem = _check_field(item, value)
        if problem:
            errors.append(f"{item.id}: {problem}")
    return errors


def can_edit_submission(status: str, settings: FormSettings) -> bool:
    """Return whether a submission in ``status`` may still be edited."""

    if is_final_status(SubmissionStatus, status):
        return False
    if status == SubmissionStatus.DRAFT:
        return True
    return settings.allow_edit_after_submit
