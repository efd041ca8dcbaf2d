"""Evaluation of workflow conditions against a trigger payload."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .models import Condition, ConditionOperator

logger = logging.getLogger(__name__)

MISSING = object()


def lookup_path(data: Any, path: str) -> Any:
    """Resolve a dotted ``path`` in nested mappings and sequences.

    Returns :data:`MISSING` when any segment does not exist.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _compare(actual: Any, op: ConditionOperator, expected: Any) -> bool:
    if op is ConditionOperator.EXISTS:
        return actual is not MISSING
    if op is ConditionOperator.NOT_EXISTS:
        return actual is MISSING
    if actual is MISSING:
        return False
    if op is ConditionOperator.EQ:
        return actual == expected
    if op is ConditionOperator.NE:
        return actual != expected
    if op is ConditionOperator.IN:
        return actual in (expected or ())
    if op is ConditionOperator.NOT_IN:
        return actual not in (expected or ())
    if op is ConditionOperator.CONTAINS:
        try:
            return expected in actual
        except TypeError:
            return False
    try:
        if op is ConditionOperator.GT:
            return actual > expected
        if op is ConditionOperator.GTE:
            return actual >= expected
        if op is ConditionOperator.LT:
            return actual < expected
        if op is ConditionOperator.LTE:
            return actual <= expected
    except TypeError:
        # Incomparable types never satisfy an ordering predicate.
        return False
    raise ValueError(f"Unsupported operator {op}")


def evaluate_condition(condition: Condition, payload: Mapping[str, Any]) -> bool:
    return _compare(lookup_path(payload, condition.path), condition.op, condition.value)


def evaluate_conditions(
    conditions: Iterable[Condition], payload: Mapping[str, Any]
) -> bool:
    """Return ``True`` when every condition holds, checking them in order."""
    for condition in conditions:
        if not evaluate_condition(condition, payload):
            logger.debug(
                f"Condition {condition.path} {condition.op.value} {condition.value!r} failed"
            )
            return False
    return True
