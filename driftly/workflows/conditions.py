# /driftly/workflows/conditions.py

"""
Condition evaluation for condition steps.

evaluate() is a pure function of (contact, condition, now): it reads the
contact snapshot only, never writes, never logs and never raises. Unknown
condition types and operators evaluate to False.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union

from driftly.models.contact import Contact
from driftly.models.flow import Condition, ConditionType
from driftly.models.common import utc_now


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes and ISO-8601 strings (with or without a trailing Z)."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return _as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


# ==================== Attribute resolution ====================

def resolve_attribute(contact: Contact, attribute: Optional[str]) -> Any:
    """Top-level contact field (persisted camelCase name, dotted paths allowed) or metadata.<key>."""
    if not attribute:
        return None
    if attribute.startswith("metadata."):
        return contact.metadata.get(attribute[len("metadata."):])

    value: Any = contact.snapshot()
    for part in ("_id" if attribute == "id" else attribute).split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def resolve_date(contact: Contact, attribute: Optional[str]) -> Optional[datetime]:
    if not attribute:
        return None
    if attribute == "createdAt":
        return parse_datetime(contact.created_at)
    if attribute == "lastEmailSent":
        return parse_datetime(contact.last_email_sent)
    if attribute.startswith("events."):
        events = contact.events.to_document()
        return parse_datetime(events.get(attribute[len("events."):]))
    if attribute.startswith("metadata."):
        return parse_datetime(contact.metadata.get(attribute[len("metadata."):]))
    return None


# ==================== Per-type evaluators ====================

def _interaction_condition(flag: str, at_field: str) -> Callable[[Contact, Condition, datetime], bool]:
    def evaluator(contact: Contact, condition: Condition, now: datetime) -> bool:
        if condition.value is None:
            return False
        interaction = contact.interaction_for(str(condition.value))
        if interaction is None or not getattr(interaction, flag):
            return False
        if condition.timeframe:
            happened_at = getattr(interaction, at_field)
            if happened_at is None:
                return False
            return _as_utc(happened_at) >= now - timedelta(hours=float(condition.timeframe))
        return True
    return evaluator


def _equals(left: Any, right: Any) -> bool:
    if _is_number(left):
        number = _as_number(right)
        if number is not None:
            return left == number
    return left == right


def _contains(left: Any, right: Any) -> Optional[bool]:
    """None when the left side is neither a string nor a list."""
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, (list, tuple, set)):
        return right in left
    return None


def _compare(left: Any, right: Any, op: Callable[[float, float], bool]) -> bool:
    number = _as_number(right)
    return _is_number(left) and number is not None and op(left, number)


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


ATTRIBUTE_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda left, right: not _equals(left, right),
    "contains": lambda left, right: bool(_contains(left, right)),
    "not_contains": lambda left, right: not _contains(left, right) if _contains(left, right) is not None else True,
    "greater_than": lambda left, right: _compare(left, right, lambda a, b: a > b),
    "less_than": lambda left, right: _compare(left, right, lambda a, b: a < b),
    "exists": lambda left, _: _is_present(left),
    "not_exists": lambda left, _: not _is_present(left),
}


def _attribute_condition(contact: Contact, condition: Condition, now: datetime) -> bool:
    operator = ATTRIBUTE_OPERATORS.get(condition.operator or "")
    if operator is None:
        return False
    return operator(resolve_attribute(contact, condition.attribute), condition.value)


def _tag_condition(contact: Contact, condition: Condition, now: datetime) -> bool:
    return condition.value in contact.tags


def _whole_days_since(moment: datetime, now: datetime) -> int:
    return (now - moment).days


DATE_OPERATORS: Dict[str, Callable[[datetime, Any, datetime], bool]] = {
    "before": lambda moment, value, now: (parse_datetime(value) is not None and moment < parse_datetime(value)),
    "after": lambda moment, value, now: (parse_datetime(value) is not None and moment > parse_datetime(value)),
    "within_days": lambda moment, value, now: (
        _as_number(value) is not None and _whole_days_since(moment, now) <= _as_number(value)
    ),
    "older_than_days": lambda moment, value, now: (
        _as_number(value) is not None and _whole_days_since(moment, now) > _as_number(value)
    ),
}


def _date_condition(contact: Contact, condition: Condition, now: datetime) -> bool:
    operator = DATE_OPERATORS.get(condition.operator or "")
    moment = resolve_date(contact, condition.attribute)
    if operator is None or moment is None:
        return False
    return operator(moment, condition.value, now)


EVALUATORS: Dict[str, Callable[[Contact, Condition, datetime], bool]] = {
    ConditionType.OPEN.value: _interaction_condition("opened", "opened_at"),
    ConditionType.CLICK.value: _interaction_condition("clicked", "clicked_at"),
    ConditionType.ATTRIBUTE.value: _attribute_condition,
    ConditionType.TAG.value: _tag_condition,
    ConditionType.DATE.value: _date_condition,
}


def evaluate(
    contact: Contact,
    condition: Union[Condition, Dict[str, Any], None],
    now: Optional[datetime] = None
) -> bool:
    """
    Evaluate a condition descriptor against a contact snapshot.

    Args:
        contact: The contact being routed
        condition: Condition model or its persisted dict shape
        now: Reference time for timeframe and day arithmetic (defaults to UTC now)

    Returns:
        The boolean result; False for unknown types, operators or malformed input
    """
    try:
        if condition is None:
            return False
        if isinstance(condition, dict):
            condition = Condition.model_validate(condition)
        evaluator = EVALUATORS.get(condition.type)
        if evaluator is None:
            return False
        return bool(evaluator(contact, condition, _as_utc(now) if now else utc_now()))
    except (TypeError, ValueError, AttributeError, OverflowError):
        return False
