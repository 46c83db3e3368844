"""Evaluation of step conditions against an execution context."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Iterable, Mapping

from .contracts import ConditionOperator, StepCondition
from .templates import lookup_path

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate_condition(condition: StepCondition, context: Mapping[str, Any]) -> bool:
    actual = lookup_path(context, condition.field)
    expected = condition.value
    op = condition.operator

    if op is ConditionOperator.EQ:
        return actual == expected
    if op is ConditionOperator.NEQ:
        return actual != expected
    if op in (ConditionOperator.GT, ConditionOperator.LT):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        return actual > expected if op is ConditionOperator.GT else actual < expected
    if op is ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, Mapping):
            return expected in actual
        if isinstance(actual, Sequence):
            return expected in actual
        return False
    if op is ConditionOperator.EXISTS:
        return actual is not None
    return False


def conditions_met(
    conditions: Iterable[StepCondition], context: Mapping[str, Any]
) -> bool:
    """All conditions must hold; an empty list always holds."""
    for condition in conditions:
        if not evaluate_condition(condition, context):
            logger.debug(
                f"Condition failed: {condition.field} {condition.operator.value} {condition.value!r}"
            )
            return False
    return True
