"""Tests for record conditions and dotted field access."""

import pytest

from datahub.pipeline.conditions import (
    ConditionError,
    evaluate,
    get_field,
    parse_expression,
    remove_field,
    set_field,
    validate_condition,
)


@pytest.fixture
def record() -> dict:
    return {
        "status": "active",
        "total": 250,
        "tags": ["vip", "eu"],
        "customer": {"country": "DE", "email": "a@example.com"},
        "note": None,
    }


class TestFieldPaths:
    def test_get_nested(self, record: dict) -> None:
        assert get_field(record, "customer.country") == "DE"

    def test_get_missing_returns_default(self, record: dict) -> None:
        assert get_field(record, "customer.city", "n/a") == "n/a"
        assert get_field(record, "status.deep") is None

    def test_set_creates_intermediate_mappings(self) -> None:
        target: dict = {}
        set_field(target, "a.b.c", 1)
        assert target == {"a": {"b": {"c": 1}}}

    def test_remove_nested(self, record: dict) -> None:
        remove_field(record, "customer.email")
        assert record["customer"] == {"country": "DE"}

    def test_remove_missing_is_noop(self, record: dict) -> None:
        remove_field(record, "nope.nothing")
        assert "nope" not in record


class TestStructuredConditions:
    def test_none_matches_everything(self, record: dict) -> None:
        assert evaluate(None, record) is True

    def test_default_operator_is_eq(self, record: dict) -> None:
        assert evaluate({"field": "status", "value": "active"}, record) is True

    def test_in_operator(self, record: dict) -> None:
        cond = {"field": "customer.country", "cmp": "in", "value": ["DE", "AT"]}
        assert evaluate(cond, record) is True

    def test_ordered_comparison(self, record: dict) -> None:
        assert evaluate({"field": "total", "cmp": "gte", "value": 250}, record) is True
        assert evaluate({"field": "total", "cmp": "lt", "value": 100}, record) is False

    def test_ordered_comparison_against_missing_is_false(self, record: dict) -> None:
        assert evaluate({"field": "missing", "cmp": "gt", "value": 0}, record) is False

    def test_contains_on_list(self, record: dict) -> None:
        assert evaluate({"field": "tags", "cmp": "contains", "value": "vip"}, record) is True

    def test_exists_and_is_null(self, record: dict) -> None:
        assert evaluate({"field": "note", "cmp": "exists"}, record) is True
        assert evaluate({"field": "note", "cmp": "isNull"}, record) is True
        assert evaluate({"field": "missing", "cmp": "exists"}, record) is False

    def test_all_and_any(self, record: dict) -> None:
        cond = {
            "all": [
                {"field": "status", "value": "active"},
                {"any": [
                    {"field": "total", "cmp": "gt", "value": 1000},
                    {"field": "customer.country", "value": "DE"},
                ]},
            ]
        }
        assert evaluate(cond, record) is True

    def test_regex(self, record: dict) -> None:
        cond = {"field": "customer.email", "cmp": "regex", "value": r"@example\.com$"}
        assert evaluate(cond, record) is True

    def test_invalid_regex_raises(self, record: dict) -> None:
        with pytest.raises(ConditionError, match="Invalid regex"):
            evaluate({"field": "status", "cmp": "regex", "value": "("}, record)

    def test_unknown_operator_raises(self, record: dict) -> None:
        with pytest.raises(ConditionError, match="Unsupported operator"):
            evaluate({"field": "status", "cmp": "like", "value": "a"}, record)

    def test_missing_field_raises(self, record: dict) -> None:
        with pytest.raises(ConditionError, match="missing 'field'"):
            evaluate({"cmp": "eq", "value": 1}, record)


class TestStringConditions:
    def test_and_joined_clauses(self, record: dict) -> None:
        assert evaluate('status = "active" && total >= 100', record) is True
        assert evaluate('status = "active" && total >= 1000', record) is False

    def test_not_equal(self, record: dict) -> None:
        assert evaluate("customer.country != FR", record) is True

    def test_bare_field_is_truthiness(self, record: dict) -> None:
        assert evaluate("status", record) is True
        assert evaluate("note", record) is False

    def test_literals_are_typed(self) -> None:
        clauses = parse_expression("a = 1 && b = 2.5 && c = true && d = null && e = 'x'")
        assert [c["value"] for c in clauses] == [1, 2.5, True, None, "x"]

    def test_empty_clause_raises(self, record: dict) -> None:
        with pytest.raises(ConditionError, match="Empty clause"):
            evaluate("status = active &&", record)


class TestValidateCondition:
    def test_valid_forms(self) -> None:
        assert validate_condition("a = 1") is None
        assert validate_condition({"field": "a", "cmp": "in", "value": [1]}) is None
        assert validate_condition(None) is None

    def test_nested_error_reported(self) -> None:
        error = validate_condition({"all": [{"field": "a"}, {"field": "b", "cmp": "near"}]})
        assert error is not None
        assert "near" in error

    def test_unsupported_type(self) -> None:
        assert validate_condition(42) == "Unsupported condition type: int"
