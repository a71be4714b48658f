from __future__ import annotations

import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from app.automation.schemas import ConditionConfig


def resolve_field(snapshot: dict[str, Any], path: str) -> Any:
    current: Any = snapshot
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def evaluate(field_value: Any, operator: str, target_value: Any) -> bool:
    if operator == "equals":
        return _normalize(field_value) == _normalize(target_value)
    if operator == "not_equals":
        return _normalize(field_value) != _normalize(target_value)
    if operator == "contains":
        if isinstance(field_value, str):
            return target_value is not None and str(target_value) in field_value
        if isinstance(field_value, (list, tuple)):
            expected = _normalize(target_value)
            return any(_normalize(item) == expected for item in field_value)
        return False
    if operator in {"greater_than", "less_than"}:
        left = _to_number(field_value)
        right = _to_number(target_value)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    return False


def evaluate_condition(config: ConditionConfig, snapshot: dict[str, Any]) -> bool:
    return evaluate(resolve_field(snapshot, config.field), config.operator, config.value)


def _normalize(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    number = _to_number(value)
    if number is not None:
        return number
    return value


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number
