"""Condition evaluator tests."""

import logging

from stepwise.conditions import (
    evaluate_conditions,
    evaluate_event_conditions,
    get_value_by_path,
)
from stepwise.contracts import Condition, WorkflowContext


def _context(**results) -> WorkflowContext:
    return WorkflowContext(execution_id="e1", workflow_id="wf", step_results=results)


def test_equals_matches_step_result():
    assert evaluate_conditions(
        {"field": "s1", "operator": "equals", "value": 5}, _context(s1=5)
    )
    assert not evaluate_conditions(
        {"field": "s1", "operator": "equals", "value": 6}, _context(s1=5)
    )


def test_equals_does_not_treat_bool_as_number():
    assert not evaluate_conditions(
        {"field": "s1", "operator": "equals", "value": 1}, _context(s1=True)
    )


def test_not_equals_on_missing_field_is_true():
    assert evaluate_conditions(
        Condition(field="missing", operator="not_equals", value=1), _context()
    )


def test_greater_than_coerces_numeric_strings():
    assert evaluate_conditions(
        {"field": "s1", "operator": "greater_than", "value": "3"}, _context(s1=5)
    )
    assert evaluate_conditions(
        {"field": "s1", "operator": "less_than", "value": 10}, _context(s1="7.5")
    )


def test_numeric_comparison_with_non_numbers_is_false():
    ctx = _context(s1="abc")
    assert not evaluate_conditions({"field": "s1", "operator": "greater_than", "value": 1}, ctx)
    assert not evaluate_conditions({"field": "s1", "operator": "less_than", "value": 1}, ctx)
    assert not evaluate_conditions(
        {"field": "missing", "operator": "greater_than", "value": -1}, ctx
    )


def test_exists():
    assert evaluate_conditions({"field": "s1", "operator": "exists"}, _context(s1=0))
    assert not evaluate_conditions({"field": "s1", "operator": "exists"}, _context(s1=None))
    assert not evaluate_conditions({"field": "s2", "operator": "exists"}, _context(s1=1))


def test_unknown_operator_fails_open_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="stepwise.conditions"):
        assert evaluate_conditions(
            {"field": "s1", "operator": "matches", "value": "x"}, _context(s1="y")
        )
    assert "Unknown condition operator" in caplog.text


def test_no_conditions_is_true():
    assert evaluate_conditions(None, _context())
    assert evaluate_conditions({}, _context())


def test_get_value_by_path():
    data = {"data": {"id": 42, "items": [{"sku": "a"}]}}
    assert get_value_by_path(data, "data.id") == 42
    assert get_value_by_path(data, "data.items.0.sku") == "a"
    assert get_value_by_path(data, "data.missing.deeper") is None
    assert get_value_by_path(None, "data") is None


def test_event_conditions_all_must_hold():
    event = {"order": {"total": 150, "status": "paid", "tags": ["vip"]}}
    conditions = [
        {"field": "order.total", "operator": "greater_than", "value": 100},
        {"field": "order.status", "operator": "equals", "value": "paid"},
        {"field": "order.tags", "operator": "contains", "value": "vip"},
    ]
    assert evaluate_event_conditions(conditions, event)

    conditions.append({"field": "order.coupon", "operator": "exists"})
    assert not evaluate_event_conditions(conditions, event)


def test_event_conditions_skip_unknown_operators():
    event = {"kind": "signup"}
    conditions = [
        {"field": "kind", "operator": "regex", "value": "^x"},
        {"field": "kind", "operator": "equals", "value": "signup"},
    ]
    assert evaluate_event_conditions(conditions, event)
    assert evaluate_event_conditions([], event)


def test_contains_is_unknown_for_step_conditions(caplog):
    with caplog.at_level(logging.WARNING, logger="stepwise.conditions"):
        assert evaluate_conditions(
            {"field": "s1", "operator": "contains", "value": "zzz"}, _context(s1="abc")
        )
    assert "Unknown condition operator 'contains'" in caplog.text


def test_event_conditions_treat_missing_fields_as_absent():
    event = {"order": {}, "a": 1}
    assert not evaluate_event_conditions(
        [{"field": "order.total", "operator": "less_than", "value": 1}], event
    )
    assert not evaluate_event_conditions(
        [{"field": "missing", "operator": "equals", "value": None}], event
    )
    assert evaluate_event_conditions(
        [{"field": "missing", "operator": "not_equals", "value": None}], event
    )
    assert not evaluate_event_conditions(
        [{"field": "order.tags", "operator": "contains", "value": "x"}], event
    )
    # a present null still counts as zero
    assert evaluate_event_conditions(
        [{"field": "order.total", "operator": "less_than", "value": 1}],
        {"order": {"total": None}},
    )


def test_get_value_by_path_default():
    marker = object()
    assert get_value_by_path({"a": {}}, "a.b", marker) is marker
    assert get_value_by_path({"a": {"b": None}}, "a.b", marker) is None
    assert get_value_by_path({"a": [1]}, "a.3", marker) is marker
