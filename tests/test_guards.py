"""Tests for condition evaluation."""

import pytest

from stepgraph.workflow.guards import canonical_operator, evaluate_condition, evaluate_conditions
from stepgraph.workflow.schema import Condition


def test_evaluate_condition_looks_in_execute_first():
    context = {"execute": {"status": "Open"}, "status": "closed"}

    met, actual = evaluate_condition("status", "equals", "open", context)
    assert met is True
    assert actual == "Open"


def test_evaluate_condition_falls_back_to_root():
    context = {"execute": {}, "response": {"total": "12"}}

    assert evaluate_condition("response.total", "greater_than", 10, context) == (True, "12")


def test_text_operators_ignore_case():
    context = {"execute": {"email": "Ann@Example.com"}}

    assert evaluate_condition("email", "contains", "example", context)[0] is True
    assert evaluate_condition("email", "not_contains", "EXAMPLE", context)[0] is False
    assert evaluate_condition("email", "not_equals", "ann@example.com", context)[0] is False


def test_existence_operators():
    context = {"execute": {"blank": "", "zero": 0, "none": None}}

    assert evaluate_condition("blank", "exists", None, context)[0] is False
    assert evaluate_condition("zero", "exists", None, context)[0] is True
    assert evaluate_condition("missing", "not_exists", None, context)[0] is True
    assert evaluate_condition("none", "is_null", None, context)[0] is True
    assert evaluate_condition("zero", "is_not_null", None, context)[0] is True


def test_numeric_operators_reject_non_numbers():
    context = {"execute": {"qty": "abc", "n": 5}}

    assert evaluate_condition("qty", "greater_than", 1, context)[0] is False
    assert evaluate_condition("n", "gte", "5", context)[0] is True
    assert evaluate_condition("n", "lte", 4, context)[0] is False
    assert evaluate_condition("n", "less_than", 6, context)[0] is True


def test_operator_aliases():
    assert canonical_operator("gt") == "greater_than"
    assert canonical_operator("notExists") == "not_exists"
    with pytest.raises(ValueError):
        canonical_operator("between")


def test_evaluate_conditions_flat_and_or():
    """One logical operator applies across every condition."""
    context = {"execute": {"a": "1", "b": "2"}}
    extra = [Condition(json_path="b", operator="equals", expected_value="3")]

    and_outcome = evaluate_conditions("a", "equals", "1", context, extra, "AND")
    or_outcome = evaluate_conditions("a", "equals", "1", context, extra, "OR")

    assert and_outcome.met is False
    assert and_outcome.results == (True, False)
    assert or_outcome.met is True
    assert or_outcome.actual_value == "1"


def test_evaluate_conditions_skips_pathless_conditions():
    context = {"execute": {"a": "1"}}
    extra = [Condition(json_path="", operator="equals", expected_value="x")]

    outcome = evaluate_conditions("a", "exists", None, context, extra)
    assert outcome.met is True
    assert outcome.results == (True,)
