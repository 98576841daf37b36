"""Tests for approval rule condition parsing and evaluation."""

from decimal import Decimal
from fractions import Fraction

import pytest

from safee.core.errors import ValidationError
from safee.core.rules.conditions import (
    Always,
    Composite,
    ConditionType,
    Never,
    describe,
    evaluate,
    parse_condition,
    validate_conditions,
)


def matches(conditions, attributes):
    return evaluate(parse_condition(conditions), attributes)


class TestAmountConditions:

    @pytest.mark.parametrize("operator,threshold,expected", [
        ("gt", 1000, True),
        ("gte", 1500, True),
        ("lt", 1000, False),
        ("lte", 1500, True),
        ("eq", 1500, True),
        ("neq", 1500, False),
    ])
    def test_operators(self, operator, threshold, expected):
        condition = {"type": "amount", "operator": operator, "value": threshold}
        assert matches(condition, {"amount": 1500}) is expected

    def test_missing_amount_never_matches(self):
        assert not matches({"type": "amount", "operator": "lt", "value": 10}, {})

    def test_non_numeric_amount_never_matches(self):
        condition = {"type": "amount", "operator": "gt", "value": 10}
        assert not matches(condition, {"amount": "5000"})
        assert not matches(condition, {"amount": True})

    @pytest.mark.parametrize("amount", [
        Decimal("5000.00"),
        Fraction(10001, 2),
        5000.5,
    ])
    def test_any_real_number_amount_is_compared(self, amount):
        condition = {"type": "amount", "operator": "gt", "value": 1000}
        assert matches(condition, {"amount": amount})

    def test_decimal_equality_ignores_scale(self):
        condition = {"type": "amount", "operator": "eq", "value": 1500}
        assert matches(condition, {"amount": Decimal("1500.00")})

    def test_decimal_threshold(self):
        condition = {"type": "amount", "operator": "gte", "value": Decimal("999.99")}
        assert validate_conditions(condition)
        assert matches(condition, {"amount": Decimal("999.99")})
        assert not matches(condition, {"amount": 999.98})

    @pytest.mark.parametrize("threshold", [True, "1000", float("nan"), Decimal("Infinity")])
    def test_threshold_must_be_finite_number(self, threshold):
        with pytest.raises(ValidationError):
            validate_conditions({"type": "amount", "operator": "gt", "value": threshold})

    def test_non_finite_amount_never_matches(self):
        condition = {"type": "amount", "operator": "lt", "value": 1000}
        assert not matches(condition, {"amount": float("nan")})
        assert not matches(condition, {"amount": Decimal("-Infinity")})

    def test_contains_not_allowed_for_amount(self):
        with pytest.raises(ValidationError):
            validate_conditions({"type": "amount", "operator": "contains", "value": 1})


class TestFieldConditions:

    def test_equality(self):
        condition = {"type": "field", "field": "currency", "operator": "eq", "value": "USD"}
        assert matches(condition, {"currency": "USD"})
        assert not matches(condition, {"currency": "EUR"})

    def test_in_and_not_in(self):
        in_condition = {"type": "field", "field": "region", "operator": "in", "value": ["eu", "uk"]}
        assert matches(in_condition, {"region": "eu"})
        assert not matches(in_condition, {"region": "us"})

        not_in = {"type": "field", "field": "region", "operator": "not_in", "value": ["eu"]}
        assert matches(not_in, {"region": "us"})

    def test_in_requires_list(self):
        with pytest.raises(ValidationError):
            validate_conditions({"type": "field", "field": "region", "operator": "in", "value": "eu"})

    def test_contains(self):
        condition = {"type": "field", "field": "tags", "operator": "contains", "value": "urgent"}
        assert matches(condition, {"tags": ["urgent", "q3"]})
        assert not matches(condition, {"tags": ["q3"]})
        assert matches({**condition, "field": "title"}, {"title": "urgent: fix"})

    def test_exists(self):
        condition = {"type": "field", "field": "vendor", "operator": "exists", "value": True}
        assert matches(condition, {"vendor": "acme"})
        assert not matches(condition, {})

    def test_ordered_comparison_of_strings_fails_closed(self):
        condition = {"type": "field", "field": "code", "operator": "gt", "value": "a"}
        assert not matches(condition, {"code": "b"})


class TestRoleAndEntityConditions:

    def test_user_role_membership(self):
        condition = {"type": "userRole", "value": ["finance", "admin"]}
        assert matches(condition, {"user_roles": ["member", "finance"]})
        assert matches(condition, {"user_role": "admin"})
        assert not matches(condition, {"user_roles": ["member"]})
        assert not matches(condition, {})

    def test_entity_type(self):
        condition = {"type": "entityType", "value": "invoice"}
        assert matches(condition, {"entity_type": "invoice"})
        assert not matches(condition, {"entity_type": "audit_plan"})

    def test_manual_always_matches(self):
        assert isinstance(parse_condition({"type": "manual"}), Always)
        assert matches({"type": "manual"}, {})


class TestComposites:

    def test_stored_top_level_and(self):
        conditions = {
            "logic": "AND",
            "conditions": [
                {"type": "amount", "operator": "gte", "value": 1000},
                {"type": "field", "field": "currency", "operator": "eq", "value": "USD"},
            ],
        }
        parsed = parse_condition(conditions)
        assert isinstance(parsed, Composite)
        assert parsed.kind == ConditionType.ALL
        assert evaluate(parsed, {"amount": 2000, "currency": "USD"})
        assert not evaluate(parsed, {"amount": 2000, "currency": "EUR"})

    def test_stored_top_level_or(self):
        conditions = {
            "logic": "OR",
            "conditions": [
                {"type": "amount", "operator": "gte", "value": 1000},
                {"type": "userRole", "value": "intern"},
            ],
        }
        assert matches(conditions, {"amount": 10, "user_roles": ["intern"]})
        assert not matches(conditions, {"amount": 10})

    def test_nested_and_not(self):
        conditions = {
            "type": "all",
            "conditions": [
                {"type": "amount", "operator": "gt", "value": 0},
                {"type": "not", "condition": {"type": "field", "field": "trusted", "operator": "eq", "value": True}},
            ],
        }
        assert matches(conditions, {"amount": 5, "trusted": False})
        assert not matches(conditions, {"amount": 5, "trusted": True})

    @pytest.mark.parametrize("logic", ["AND", "OR"])
    def test_empty_list_never_matches(self, logic):
        assert not matches({"logic": logic, "conditions": []}, {"amount": 1})


class TestFailClosed:

    @pytest.mark.parametrize("payload", [
        {"type": "script", "value": "import os"},
        {"type": "amount", "operator": "between", "value": 5},
        {"type": "field", "operator": "eq", "value": 1},
        {"logic": "XOR", "conditions": []},
        ["not", "an", "object"],
        None,
    ])
    def test_unsupported_shapes_never_match(self, payload):
        parsed = parse_condition(payload)
        assert isinstance(parsed, Never)
        assert evaluate(parsed, {"amount": 10 ** 9}) is False

    def test_strict_parse_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_conditions({"type": "script"})
        assert "Unknown condition type" in exc_info.value.message

    def test_unsupported_child_fails_whole_tree(self):
        conditions = {
            "type": "any",
            "conditions": [
                {"type": "manual"},
                {"type": "bogus"},
            ],
        }
        assert not matches(conditions, {})


class TestDescribe:

    def test_describe_comparison(self):
        parsed = parse_condition({"type": "amount", "operator": "gte", "value": 1000})
        assert describe(parsed) == "amount gte 1000"

    def test_describe_composite(self):
        parsed = parse_condition({
            "logic": "OR",
            "conditions": [{"type": "manual"}, {"type": "entityType", "value": "invoice"}],
        })
        assert describe(parsed) == "(manual or entity_type == 'invoice')"
