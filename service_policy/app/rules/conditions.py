"""
Condition predicates for policies.

``evaluate_condition`` is three-valued: True when the predicate holds, False
when it does not, and None when the request lacks the input needed to decide
(no amount, no client IP, missing attribute). Callers decide how to treat None;
the engine lets undecidable DENY policies match and undecidable ALLOW policies
fall through.
"""

import ipaddress
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Optional, Tuple, List

from shared.logging import get_logger
from .models import (
    AttributeCondition, ConditionOperator, PolicyCondition, RequestContext, TimeWindow
)

logger = get_logger("policy.conditions")

_MINUTES_PER_DAY = 24 * 60


def evaluate_condition(condition: Optional[PolicyCondition],
                       request: RequestContext,
                       clock_skew: timedelta = timedelta(0)) -> Optional[bool]:
    """Evaluate every present dimension of ``condition`` against ``request``."""
    if condition is None or condition.is_empty():
        return True

    results: List[Optional[bool]] = []

    if condition.time_window is not None:
        results.append(_check_time_window(condition.time_window, request.timestamp, clock_skew))

    if condition.max_amount is not None:
        if request.amount is None:
            results.append(None)
        else:
            results.append(request.amount <= condition.max_amount)

    if condition.ip_allow_list:
        results.append(_check_ip(condition.ip_allow_list, request.ip_address))

    for attribute in condition.attributes:
        results.append(evaluate_attribute(attribute, request))

    if any(result is False for result in results):
        return False
    if any(result is None for result in results):
        return None
    return True


def _minutes(value: dt_time) -> float:
    return value.hour * 60 + value.minute + value.second / 60.0


def _check_time_window(window: TimeWindow, timestamp: datetime, clock_skew: timedelta) -> bool:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    timestamp = timestamp.astimezone(timezone.utc)

    # A window opened on day D; a wrapping window closes on D + 1. Skew can
    # stretch either edge across midnight, so check the neighbouring days too.
    for offset in (-1, 0, 1):
        day = timestamp.date() + timedelta(days=offset)
        opens = datetime.combine(day, window.start, tzinfo=timezone.utc) - clock_skew
        closes_on = day + timedelta(days=1) if window.start > window.end else day
        closes = datetime.combine(closes_on, window.end, tzinfo=timezone.utc) + clock_skew
        if opens <= timestamp <= closes:
            if window.days is None or day.weekday() in window.days:
                return True
    return False


def _check_ip(allow_list: Tuple[str, ...], ip_address: Optional[str]) -> Optional[bool]:
    if not ip_address:
        return None
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        logger.warning("Malformed client IP in request context", ip_address=ip_address)
        return None

    for entry in allow_list:
        network = ipaddress.ip_network(entry, strict=False)
        if address.version == network.version and address in network:
            return True
    return False


def get_field_value(field: str, request: RequestContext) -> Any:
    """Resolve a field against request attributes, with dotted-path support."""
    if field in request.attributes:
        return request.attributes[field]

    if field == "amount":
        return request.amount
    if field == "ip_address":
        return request.ip_address

    if "." in field:
        value: Any = request.attributes
        for part in field.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value

    return None


def evaluate_attribute(condition: AttributeCondition, request: RequestContext) -> Optional[bool]:
    """Evaluate a single attribute condition; None when the field is absent."""
    field_value = get_field_value(condition.field, request)
    if field_value is None:
        return None

    operator = condition.operator
    expected = condition.value
    try:
        if operator == ConditionOperator.EQUALS:
            return field_value == expected
        elif operator == ConditionOperator.NOT_EQUALS:
            return field_value != expected
        elif operator == ConditionOperator.IN:
            return field_value in expected
        elif operator == ConditionOperator.NOT_IN:
            return field_value not in expected
        elif operator == ConditionOperator.GREATER_THAN:
            return field_value > expected
        elif operator == ConditionOperator.LESS_THAN:
            return field_value < expected
        elif operator == ConditionOperator.CONTAINS:
            if isinstance(field_value, (list, tuple, set, frozenset)):
                return expected in field_value
            return str(expected) in str(field_value)
        elif operator == ConditionOperator.STARTS_WITH:
            return str(field_value).startswith(str(expected))
        elif operator == ConditionOperator.ENDS_WITH:
            return str(field_value).endswith(str(expected))
    except TypeError as e:
        logger.warning(
            "Attribute condition not comparable",
            field=condition.field,
            operator=operator.value,
            error=str(e)
        )
        return None

    logger.warning("Unknown condition operator", operator=operator)
    return None


def validate_condition(condition: Optional[PolicyCondition]) -> List[str]:
    """Structural problems in a condition; empty when valid."""
    problems: List[str] = []
    if condition is None:
        return problems

    for entry in condition.ip_allow_list:
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            problems.append(f"invalid network in ip_allow_list: {entry!r}")

    if condition.max_amount is not None and condition.max_amount < 0:
        problems.append("max_amount must not be negative")

    if condition.time_window is not None and condition.time_window.days is not None:
        if any(day not in range(7) for day in condition.time_window.days):
            problems.append("time_window days must be between 0 (Monday) and 6 (Sunday)")

    for attribute in condition.attributes:
        if not attribute.field:
            problems.append("attribute condition requires a field")
        if attribute.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) \
                and not isinstance(attribute.value, (list, tuple)):
            problems.append(f"operator {attribute.operator.value} requires a list value")

    return problems


# Overlap analysis for conflict detection. Conservative: two conditions overlap
# unless some dimension is provably disjoint.


def conditions_overlap(a: Optional[PolicyCondition], b: Optional[PolicyCondition]) -> bool:
    if a is None or b is None or a.is_empty() or b.is_empty():
        return True

    if a.time_window is not None and b.time_window is not None:
        if not _windows_overlap(a.time_window, b.time_window):
            return False

    if a.ip_allow_list and b.ip_allow_list:
        if not _networks_overlap(a.ip_allow_list, b.ip_allow_list):
            return False

    if a.attributes and b.attributes:
        if _attributes_disjoint(a.attributes, b.attributes):
            return False

    # Amount ceilings always share the range [0, min(ceiling)].
    return True


def _window_segments(window: TimeWindow) -> List[Tuple[int, float, float]]:
    """Split a window into (weekday, start, end) minute segments."""
    days = sorted(window.days) if window.days is not None else list(range(7))
    start = _minutes(window.start)
    end = _minutes(window.end)
    segments = []
    for day in days:
        if start <= end:
            segments.append((day, start, end))
        else:
            segments.append((day, start, _MINUTES_PER_DAY))
            segments.append(((day + 1) % 7, 0.0, end))
    return segments


def _windows_overlap(a: TimeWindow, b: TimeWindow) -> bool:
    for day_a, start_a, end_a in _window_segments(a):
        for day_b, start_b, end_b in _window_segments(b):
            if day_a == day_b and start_a <= end_b and start_b <= end_a:
                return True
    return False


def _networks_overlap(a: Tuple[str, ...], b: Tuple[str, ...]) -> bool:
    for left in a:
        net_a = ipaddress.ip_network(left, strict=False)
        for right in b:
            net_b = ipaddress.ip_network(right, strict=False)
            if net_a.version == net_b.version and net_a.overlaps(net_b):
                return True
    return False


def _attributes_disjoint(a: Tuple[AttributeCondition, ...], b: Tuple[AttributeCondition, ...]) -> bool:
    pinned_a = {c.field: c.value for c in a if c.operator == ConditionOperator.EQUALS}
    for condition in b:
        if condition.operator != ConditionOperator.EQUALS:
            continue
        if condition.field in pinned_a and pinned_a[condition.field] != condition.value:
            return True
    return False
