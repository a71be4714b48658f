from __future__ import annotations

from decimal import Decimal

import pytest

from app.automation.conditions import evaluate, evaluate_condition, resolve_field
from app.automation.schemas import ConditionConfig


def test_resolve_field_walks_dotted_paths() -> None:
    snapshot = {"status": "won", "company": {"name": "Acme", "address": {"city": "Oslo"}}}

    assert resolve_field(snapshot, "status") == "won"
    assert resolve_field(snapshot, "company.address.city") == "Oslo"
    assert resolve_field(snapshot, "company.missing") is None
    assert resolve_field(snapshot, "status.nested") is None


@pytest.mark.parametrize(
    ("field_value", "operator", "target", "expected"),
    [
        ("won", "equals", "won", True),
        ("open", "equals", "won", False),
        ("5", "equals", 5, True),
        (Decimal("1500.00"), "equals", 1500, True),
        ("open", "not_equals", "won", True),
        ("won", "not_equals", "won", False),
        ("Enterprise renewal", "contains", "renewal", True),
        ("Enterprise renewal", "contains", "upsell", False),
        (["vip", "partner"], "contains", "vip", True),
        (42, "contains", "4", False),
        ("1500.00", "greater_than", 1000, True),
        (999, "greater_than", "1000", False),
        (10, "less_than", 20, True),
        ("abc", "greater_than", 1, False),
        (None, "less_than", 1, False),
        (True, "greater_than", 0, False),
    ],
)
def test_evaluate_operators(field_value: object, operator: str, target: object, expected: bool) -> None:
    assert evaluate(field_value, operator, target) is expected


def test_missing_field_only_equals_null() -> None:
    snapshot = {"status": "open"}

    assert evaluate_condition(ConditionConfig(field="stage", operator="equals", value=None), snapshot) is True
    assert evaluate_condition(ConditionConfig(field="stage", operator="equals", value="won"), snapshot) is False
    assert evaluate_condition(ConditionConfig(field="stage", operator="not_equals", value="won"), snapshot) is True


def test_unknown_operator_is_false() -> None:
    assert evaluate("won", "matches", "won") is False
