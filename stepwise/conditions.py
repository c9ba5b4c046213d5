"""Evaluation of ``{field, operator, value}`` condition triples."""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Mapping, Optional, Union

from .contracts import Condition, WorkflowContext

logger = logging.getLogger(__name__)

_MISSING = object()

ConditionLike = Union[Condition, Mapping[str, Any]]


def get_value_by_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted ``path`` inside nested mappings, ``default`` on a miss."""
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return default
    return current


def _to_number(value: Any) -> float:
    if value is _MISSING:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def _strict_equals(left: Any, right: Any) -> bool:
    if left is _MISSING:
        return False
    # bools are not numbers here: True must not equal 1
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _exists(value: Any) -> bool:
    return value is not _MISSING and value is not None


def compare(
    field_value: Any, operator: str, value: Any, allow_contains: bool = False
) -> Optional[bool]:
    """Apply ``operator``; returns ``None`` for operators we do not know.

    ``contains`` is only understood when ``allow_contains`` is set, which
    event conditions do and step conditions do not.
    """
    if operator == "equals":
        return _strict_equals(field_value, value)
    if operator == "not_equals":
        return not _strict_equals(field_value, value)
    if operator == "greater_than":
        return _to_number(field_value) > _to_number(value)
    if operator == "less_than":
        return _to_number(field_value) < _to_number(value)
    if operator == "exists":
        return _exists(field_value)
    if operator == "contains" and allow_contains:
        if not _exists(field_value):
            return False
        if isinstance(field_value, (list, tuple, set, dict)):
            return value in field_value
        return str(value) in str(field_value)
    return None


def _as_condition(conditions: ConditionLike) -> Condition:
    if isinstance(conditions, Condition):
        return conditions
    return Condition.model_validate(conditions)


def evaluate_conditions(
    conditions: Optional[ConditionLike], context: WorkflowContext
) -> bool:
    """Evaluate a condition against prior step results.

    ``field`` names a step id whose stored result is compared with ``value``.
    Unknown operators evaluate to ``True``: a typo in an operator makes the
    condition pass rather than block the step.
    """
    if not conditions:
        return True

    condition = _as_condition(conditions)
    field_value = context.step_results.get(condition.field, _MISSING)
    outcome = compare(field_value, condition.operator, condition.value)
    if outcome is None:
        logger.warning(
            f"Unknown condition operator '{condition.operator}' on field "
            f"'{condition.field}'; treating condition as satisfied"
        )
        return True
    return outcome


def evaluate_event_conditions(
    conditions: Optional[Iterable[ConditionLike]], event_data: Mapping[str, Any]
) -> bool:
    """Return ``True`` when every condition holds against ``event_data``.

    Fields are dotted paths into the event payload. Conditions with unknown
    operators are skipped.
    """
    if not conditions or event_data is None:
        return True

    for raw in conditions:
        condition = _as_condition(raw)
        field_value = get_value_by_path(event_data, condition.field, _MISSING)
        outcome = compare(
            field_value, condition.operator, condition.value, allow_contains=True
        )
        if outcome is None:
            logger.debug(f"Skipping unknown event condition operator '{condition.operator}'")
            continue
        if not outcome:
            return False
    return True
