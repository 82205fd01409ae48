from __future__ import annotations

import pytest

from backend.flowdesk.engine.conditions import ConditionError, evaluate, parse_condition


def test_bare_string_compares_the_outcome():
    condition = parse_condition("approved")
    assert condition == {"var": "outcome", "op": "eq", "value": "approved"}
    assert evaluate(condition, {"outcome": "approved"})
    assert not evaluate(condition, {"outcome": "rejected"})


def test_blank_condition_is_unconditional():
    assert parse_condition(None) is None
    assert parse_condition("   ") is None
    assert evaluate(None, {})


def test_json_text_is_decoded():
    condition = parse_condition('{"var": "amount", "op": "gt", "value": 100}')
    assert evaluate(condition, {"amount": 250})
    assert not evaluate(condition, {"amount": 50})


def test_nested_paths_and_combinators():
    condition = parse_condition(
        {
            "all": [
                {"var": "request.amount", "op": "gte", "value": 1000},
                {"any": ["approved", {"var": "vip", "op": "truthy"}]},
                {"not": {"var": "request.region", "op": "in", "value": ["blocked"]}},
            ]
        }
    )
    variables = {"request": {"amount": 1000, "region": "eu"}, "outcome": "rejected", "vip": True}
    assert evaluate(condition, variables)
    variables["vip"] = False
    assert not evaluate(condition, variables)


def test_missing_variables_never_match():
    assert not evaluate(parse_condition({"var": "amount", "op": "lt", "value": 5}), {})
    assert not evaluate(parse_condition({"var": "amount", "op": "exists"}), {})
    assert evaluate(parse_condition({"var": "amount", "op": "exists"}), {"amount": None})


def test_ordering_rejects_mismatched_types():
    condition = parse_condition({"var": "amount", "op": "gt", "value": 10})
    assert not evaluate(condition, {"amount": "lots"})
    assert not evaluate(condition, {"amount": True})


def test_contains_operator():
    condition = parse_condition({"var": "tags", "op": "contains", "value": "urgent"})
    assert evaluate(condition, {"tags": ["urgent", "hr"]})
    assert not evaluate(condition, {"tags": 5})


@pytest.mark.parametrize(
    "raw",
    [
        {"op": "eq", "value": 1},
        {"var": "x", "op": "matches", "value": 1},
        {"var": "x", "op": "eq"},
        {"all": []},
        "{not json",
        42,
    ],
)
def test_malformed_conditions_are_rejected(raw):
    with pytest.raises(ConditionError):
        parse_condition(raw)
