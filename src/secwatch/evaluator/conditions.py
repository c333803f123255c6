"""Structured rule conditions evaluated against a single event."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

from secwatch.models import (
    GLOBAL_GROUP,
    MISSING_GROUP,
    AlertRule,
    ConditionOperator,
    RuleCondition,
    SecurityEvent,
    Severity,
)

Op = ConditionOperator


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _ordered(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Coerce a pair for ordering comparisons.

    Severities compare by rank. If either side is a number both must parse
    as numbers; otherwise the pair compares as strings.
    """
    if isinstance(actual, Severity):
        return actual.rank, Severity(expected).rank
    if _is_number(actual) or _is_number(expected):
        return float(actual), float(expected)
    return str(actual), str(expected)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def condition_matches(cond: RuleCondition, event: SecurityEvent) -> bool:
    """True if *event* satisfies *cond*.

    A missing field satisfies only ``ne``, ``not_in`` and ``exists: false``.
    Type mismatches in ordering comparisons never match.
    """
    actual = event.lookup(cond.field)
    op = cond.operator

    if op == Op.EXISTS:
        wanted = True if cond.value is None else bool(cond.value)
        return (actual is not None) == wanted
    if actual is None:
        return op in (Op.NE, Op.NOT_IN)

    try:
        if op == Op.EQ:
            return actual == cond.value
        if op == Op.NE:
            return actual != cond.value
        if op == Op.IN:
            return actual in cond.value
        if op == Op.NOT_IN:
            return actual not in cond.value
        if op == Op.CONTAINS:
            if isinstance(actual, str):
                return str(cond.value) in actual
            return cond.value in actual
        if op == Op.REGEX:
            return _compiled(str(cond.value)).search(str(actual)) is not None

        left, right = _ordered(actual, cond.value)
        if op == Op.GT:
            return left > right
        if op == Op.GTE:
            return left >= right
        if op == Op.LT:
            return left < right
        if op == Op.LTE:
            return left <= right
    except (TypeError, ValueError, re.error):
        return False
    return False


def rule_matches(rule: AlertRule, event: SecurityEvent) -> bool:
    """Event type matches and every condition holds."""
    if not rule.matches_type(event.type):
        return False
    return all(condition_matches(c, event) for c in rule.conditions)


def group_key_for(rule: AlertRule, event: SecurityEvent) -> str:
    if not rule.group_by:
        return GLOBAL_GROUP
    value = event.lookup(rule.group_by)
    if value is None or value == "":
        return MISSING_GROUP
    return str(value)
