"""
Condition evaluation for workflow and assignment rules.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union

from shared.logging import get_logger
from shared.errors import ValidationError
from .models import (
    Condition, ConditionGroup, ConditionOperator, MatchMode, Record, parse_datetime
)

logger = get_logger("automation.conditions")

_CHANGE_OPERATORS = (
    ConditionOperator.CHANGED,
    ConditionOperator.CHANGED_TO,
    ConditionOperator.CHANGED_FROM,
)


def parse_conditions(raw: Any) -> ConditionGroup:
    """Parse and validate a condition tree."""
    return ConditionGroup.from_raw(raw)


def evaluate_conditions(conditions: Union[ConditionGroup, Dict[str, Any], list, None],
                        record: Record,
                        previous_record: Optional[Record] = None) -> bool:
    """Evaluate a condition tree against a record. Empty groups match."""
    if not isinstance(conditions, ConditionGroup):
        conditions = parse_conditions(conditions)
    return _evaluate_group(conditions, record, previous_record)


def _evaluate_group(group: ConditionGroup, record: Record, previous: Optional[Record]) -> bool:
    if not group.rules:
        return True

    results = (_evaluate_node(node, record, previous) for node in group.rules)
    if group.match == MatchMode.ANY:
        return any(results)
    return all(results)


def _evaluate_node(node: Union[Condition, ConditionGroup], record: Record, previous: Optional[Record]) -> bool:
    if isinstance(node, ConditionGroup):
        return _evaluate_group(node, record, previous)
    return evaluate_condition(node, record, previous)


def evaluate_condition(condition: Condition, record: Record, previous_record: Optional[Record] = None) -> bool:
    """Evaluate a single leaf."""
    op = condition.operator
    value = record.get_field(condition.field)
    expected = condition.value

    if op in _CHANGE_OPERATORS:
        if previous_record is None:
            return False
        before = previous_record.get_field(condition.field)
        if _equals(before, value):
            return False
        if op == ConditionOperator.CHANGED_TO:
            return _equals(value, expected)
        if op == ConditionOperator.CHANGED_FROM:
            target = condition.previous_value if condition.previous_value is not None else expected
            return _equals(before, target)
        return True

    if op == ConditionOperator.IS_NULL:
        return value is None
    if op == ConditionOperator.IS_NOT_NULL:
        return value is not None
    if op == ConditionOperator.IS_EMPTY:
        return _is_empty(value)
    if op == ConditionOperator.NOT_EMPTY:
        return not _is_empty(value)

    if op == ConditionOperator.EQ:
        return _equals(value, expected)
    if op == ConditionOperator.NE:
        return not _equals(value, expected)

    if op == ConditionOperator.CONTAINS:
        return _contains(value, expected)
    if op == ConditionOperator.NOT_CONTAINS:
        return not _contains(value, expected)

    if op == ConditionOperator.STARTS_WITH:
        return value is not None and _text(value).startswith(_text(expected))
    if op == ConditionOperator.ENDS_WITH:
        return value is not None and _text(value).endswith(_text(expected))

    if op == ConditionOperator.IN:
        return _in(value, expected)
    if op == ConditionOperator.NOT_IN:
        return not _in(value, expected)

    if op in (ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE):
        pair = _ordered_pair(value, expected)
        if pair is None:
            return False
        left, right = pair
        if op == ConditionOperator.GT:
            return left > right
        if op == ConditionOperator.GTE:
            return left >= right
        if op == ConditionOperator.LT:
            return left < right
        return left <= right

    # Operators are validated when the tree is parsed
    raise ValidationError("Unknown condition operator", {"operator": str(op)})


def _text(value: Any) -> str:
    return str(value).strip().lower()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _to_number(value: Any) -> Optional[float]:
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


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return parse_datetime(value)
    if isinstance(value, str) and len(value) >= 10 and value[4:5] == "-":
        try:
            return parse_datetime(value)
        except ValidationError:
            return None
    return None


def _equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        if isinstance(left, str) or isinstance(right, str):
            return _text(left) == _text(right)
        return left == right
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        a, b = _to_number(left), _to_number(right)
        if a is not None and b is not None:
            return a == b
    if isinstance(left, str) and isinstance(right, str):
        return _text(left) == _text(right)
    return left == right


def _contains(value: Any, expected: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set)):
        return any(_equals(item, expected) for item in value)
    if isinstance(value, dict):
        return any(_equals(key, expected) for key in value)
    return _text(expected) in _text(value)


def _in(value: Any, expected: Any) -> bool:
    if value is None or not isinstance(expected, (list, tuple, set)):
        return False
    if isinstance(value, (list, tuple, set)):
        return any(_equals(item, option) for item in value for option in expected)
    return any(_equals(value, option) for option in expected)


def _ordered_pair(left: Any, right: Any):
    if left is None or right is None:
        return None
    a, b = _to_number(left), _to_number(right)
    if a is not None and b is not None:
        return a, b
    da, db = _to_datetime(left), _to_datetime(right)
    if da is not None and db is not None:
        return da, db
    return None


def should_trigger_on_update(trigger_config: Dict[str, Any], record: Record,
                             previous_record: Optional[Record]) -> bool:
    """An update triggers when any watched field changed. No watch list means
    every update triggers."""
    watch_fields = trigger_config.get("watch_fields") or trigger_config.get("watchFields") or []
    if not watch_fields:
        return True
    if previous_record is None:
        return True

    for field_name in watch_fields:
        if not _equals(record.get_field(field_name), previous_record.get_field(field_name)):
            return True

    logger.debug("No watched fields changed", record_id=record.id, watch_fields=watch_fields)
    return False


def matches_stage_change(trigger_config: Dict[str, Any], record: Record,
                         previous_record: Optional[Record]) -> bool:
    """The stage must actually change, and match from/to lists when given."""
    from_stage = previous_record.stage if previous_record else None
    to_stage = record.stage
    if previous_record is None or _equals(from_stage, to_stage):
        return False

    from_stages = trigger_config.get("from_stages") or trigger_config.get("fromStages") or []
    to_stages = trigger_config.get("to_stages") or trigger_config.get("toStages") or []

    from_matches = not from_stages or (from_stage is not None and _in(from_stage, from_stages))
    to_matches = not to_stages or _in(to_stage, to_stages)
    return from_matches and to_matches
