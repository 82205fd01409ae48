from __future__ import annotations

import pytest

from backend.flowdesk.errors import ValidationError
from backend.flowdesk.forms import (
    FormSettings,
    can_edit_submission,
    hidden_fields,
    parse_form_definition,
    validate_submission,
)

EXPENSE_FORM = {
    "fields": [
        {"id": "amount", "type": "number", "label": "Amount", "isRequired": True, "properties": {"min": 1, "max": 5000}},
        {"id": "email", "type": "email", "label": "Email"},
        {"id": "website", "type": "url", "label": "Website"},
        {"id": "category", "type": "dropdown", "label": "Category", "options": ["travel", "meals"]},
        {"id": "hasReceipt", "type": "checkbox", "label": "Receipt attached"},
        {"id": "receiptNote", "type": "text", "label": "Missing receipt note", "isRequired": True},
        {
            "id": "code",
            "type": "text",
            "label": "Cost centre",
            "validation": {"pattern": "^CC-[0-9]{3}$", "errorMessage": "Use CC-123"},
        },
    ],
    "conditionalRules": [
        {"targetFieldId": "receiptNote", "condition": "hasReceipt", "action": "hide", "value": True},
    ],
    "settings": {"requireSignature": True},
}


def test_parses_fields_rules_and_settings():
    definition = parse_form_definition(EXPENSE_FORM)
    assert [field.id for field in definition.fields][:2] == ["amount", "email"]
    assert definition.fields[0].is_required
    assert definition.conditional_rules[0].target_field_id == "receiptNote"
    assert definition.settings.require_signature
    assert definition.settings.allow_save_draft


def test_hidden_field_is_not_required():
    definition = parse_form_definition(EXPENSE_FORM)
    assert validate_submission(definition, {"amount": 10, "hasReceipt": True}) == []
    assert validate_submission(definition, {"amount": 10, "hasReceipt": False}) == [
        "Missing receipt note is required"
    ]


def test_show_rule_hides_until_the_value_matches():
    definition = parse_form_definition(
        {
            "fields": [{"id": "reason", "label": "Reason"}],
            "conditionalRules": [
                {"targetFieldId": "reason", "condition": "kind", "action": "show", "value": "other"}
            ],
        }
    )
    assert hidden_fields(definition.conditional_rules, {}) == {"reason"}
    assert hidden_fields(definition.conditional_rules, {"kind": "other"}) == set()


def test_hide_rule_uses_strict_equality():
    definition = parse_form_definition(EXPENSE_FORM)
    # 1 is not the boolean true.
    assert "receiptNote" not in hidden_fields(definition.conditional_rules, {"hasReceipt": 1})


def test_field_type_checks():
    definition = parse_form_definition(EXPENSE_FORM)
    errors = validate_submission(
        definition,
        {
            "amount": 9000,
            "email": "not-an-address",
            "website": "ftp://example.com",
            "category": "gifts",
            "hasReceipt": True,
            "code": "XX-1",
        },
    )
    assert errors == [
        "amount: Maximum value is 5000",
        "email: Invalid email format",
        "website: Invalid URL format",
        "category: Category must be one of the listed options",
        "code: Use CC-123",
    ]


def test_non_numeric_number():
    definition = parse_form_definition(EXPENSE_FORM)
    errors = validate_submission(definition, {"amount": "ten", "hasReceipt": True})
    assert errors == ["amount: Amount must be a number"]


def test_edit_rules():
    settings = FormSettings()
    assert can_edit_submission("Draft", settings)
    assert not can_edit_submission("Submitted", settings)
    assert can_edit_submission("Submitted", FormSettings(allow_edit_after_submit=True))
    assert not can_edit_submission("Approved", FormSettings(allow_edit_after_submit=True))


@pytest.mark.parametrize(
    ("field", "message"),
    [
        ({"validation": {"pattern": "["}}, "field 'code': invalid validation pattern"),
        ({"properties": {"min": "5"}}, "field 'code': properties.min must be a number"),
        ({"properties": {"maxLength": [10]}}, "field 'code': properties.maxLength must be a number"),
        ({"order": "first"}, "field 'code': order must be an integer"),
        ({"validation": "^CC$"}, "field 'code': validation must be an object"),
    ],
)
def test_malformed_field_metadata_is_a_validation_error(field, message):
    with pytest.raises(ValidationError) as excinfo:
        parse_form_definition({"fields": [{"id": "code", "type": "text", **field}]})
    [error] = excinfo.value.errors
    assert error.startswith(message)


def test_settings_must_be_an_object():
    with pytest.raises(ValidationError) as excinfo:
        parse_form_definition({"fields": [], "settings": ["requireSignature"]})
    assert excinfo.value.errors == ["form settings must be an object"]


def test_explicit_null_is_not_a_missing_value():
    null_rule = {"targetFieldId": "reason", "condition": "kind", "action": "hide", "value": None}
    rules = parse_form_definition({"conditionalRules": [null_rule]}).conditional_rules
    assert hidden_fields(rules, {}) == set()
    assert hidden_fields(rules, {"kind": None}) == {"reason"}

    no_value = {"targetFieldId": "reason", "condition": "kind", "action": "hide"}
    rules = parse_form_definition({"conditionalRules": [no_value]}).conditional_rules
    assert hidden_fields(rules, {}) == {"reason"}
    assert hidden_fields(rules, {"kind": None}) == set()
