"""Condition Evaluator: evaluates condition clauses against a contact snapshot."""

from datetime import datetime
from typing import Any, Iterable, Optional

from ..models.core import (
    ConditionClause,
    ConditionField,
    ConditionOperator,
    ContactContext,
    LogicalOperator,
)
from .clock import ensure_utc, parse_instant, utc_now
from .exceptions import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _compare(actual: Any, expected: Any) -> Optional[int]:
    """Three-way compare, or None when the values are not comparable."""
    if actual is _MISSING or actual is None or expected is None:
        return None
    left, right = _coerce_number(actual), _coerce_number(expected)
    if left is not None and right is not None:
        return (left > right) - (left < right)
    if isinstance(actual, datetime) or isinstance(expected, datetime):
        try:
            left_dt, right_dt = parse_instant(actual), parse_instant(expected)
        except (TypeError, ValueError):
            return None
        return (left_dt > right_dt) - (left_dt < right_dt)
    if isinstance(actual, str) and isinstance(expected, str):
        return (actual > expected) - (actual < expected)
    return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return False
    if actual == expected:
        return True
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().lower() == expected.strip().lower()
    ordering = _compare(actual, expected)
    return ordering == 0


def _apply_operator(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    if operator == ConditionOperator.IS_EMPTY:
        return _is_empty(actual)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(actual)
    if operator == ConditionOperator.EQUALS:
        return _equals(actual, expected)
    if operator == ConditionOperator.NOT_EQUALS:
        return not _equals(actual, expected)
    if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        # Substring tests only make sense on text; anything else is false both ways
        if not isinstance(actual, str) or expected is None:
            return False
        found = str(expected).lower() in actual.lower()
        return found if operator == ConditionOperator.CONTAINS else not found
    if operator == ConditionOperator.GREATER_THAN:
        return _compare(actual, expected) == 1
    if operator == ConditionOperator.LESS_THAN:
        return _compare(actual, expected) == -1
    raise ConfigurationError(f"Unsupported condition operator '{operator}'", config_key="operator")


def _evaluate_tag(clause: ConditionClause, contact: ContactContext) -> bool:
    tags = {str(tag).lower() for tag in contact.tags}
    operator = clause.operator
    if operator == ConditionOperator.IS_EMPTY:
        return not tags
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return bool(tags)
    if clause.value is None:
        raise ConfigurationError("Tag conditions need a tag value", config_key="value")
    has_tag = str(clause.value).lower() in tags
    if operator in (ConditionOperator.EQUALS, ConditionOperator.CONTAINS):
        return has_tag
    if operator in (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_CONTAINS):
        return not has_tag
    raise ConfigurationError(f"Operator '{operator.value}' cannot be applied to tags", config_key="operator")


def _evaluate_last_message(clause: ConditionClause, contact: ContactContext, now: datetime) -> bool:
    last = contact.last_message_at
    operator = clause.operator
    if operator in (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY):
        return _apply_operator(operator, last if last is not None else _MISSING, clause.value)
    if last is None:
        return operator == ConditionOperator.NOT_EQUALS

    days = _coerce_number(clause.value)
    if days is not None:
        # Numeric values compare the days elapsed since the last message
        elapsed = (ensure_utc(now) - ensure_utc(last)).total_seconds() / 86400.0
        if operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
            same = int(elapsed) == int(days)
            return same if operator == ConditionOperator.EQUALS else not same
        return _apply_operator(operator, elapsed, days)

    try:
        expected = parse_instant(clause.value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"last_message_date value must be a number of days or an ISO date, got '{clause.value}'",
            config_key="value"
        ) from e
    if operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
        same = ensure_utc(last).date() == expected.date()
        return same if operator == ConditionOperator.EQUALS else not same
    return _apply_operator(operator, ensure_utc(last), expected)


def resolve_field(clause: ConditionClause, contact: ContactContext) -> Any:
    """Value the clause reads from the contact, or a sentinel when absent."""
    if clause.field == ConditionField.CUSTOM_FIELD:
        if not clause.field_name:
            raise ConfigurationError("custom_field conditions need a field_name", config_key="field_name")
        return contact.custom_fields.get(clause.field_name, _MISSING)
    if clause.field == ConditionField.CONTACT_STATUS:
        return contact.status if contact.status is not None else _MISSING
    if clause.field == ConditionField.CONTACT_SOURCE:
        return contact.source if contact.source is not None else _MISSING
    raise ConfigurationError(f"Unknown condition field '{clause.field}'", config_key="field")


def evaluate_clause(clause: ConditionClause, contact: ContactContext, now: Optional[datetime] = None) -> bool:
    """Evaluate one clause. Raises ConfigurationError for unresolvable references."""
    if clause.field == ConditionField.TAG:
        return _evaluate_tag(clause, contact)
    if clause.field == ConditionField.LAST_MESSAGE_DATE:
        return _evaluate_last_message(clause, contact, now or utc_now())
    return _apply_operator(clause.operator, resolve_field(clause, contact), clause.value)


def evaluate_conditions(clauses: Iterable[ConditionClause], contact: ContactContext,
                        now: Optional[datetime] = None) -> bool:
    """
    Evaluate clauses left to right.

    Each clause after the first combines with the running result through its
    own ``logical_operator`` (AND when unset). Evaluation short-circuits once
    the running result can no longer change the next combination.
    """
    result: Optional[bool] = None
    for clause in clauses:
        if result is None:
            result = evaluate_clause(clause, contact, now)
            continue
        operator = clause.logical_operator or LogicalOperator.AND
        if operator == LogicalOperator.AND:
            result = result and evaluate_clause(clause, contact, now)
        else:
            result = result or evaluate_clause(clause, contact, now)

    if result is None:
        raise ConfigurationError("Condition has no clauses", config_key="clauses")
    return result
