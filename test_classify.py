"""
test_classify.py - Cost Classification Rule Table Tests

Usage: python test_classify.py
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from check_runner import run_checks
from classify import DEFAULT_RULES, ClassificationRule, classify_item, classify_items
from config import ComparisonConfig
from models import CostCategory, ItemSide, RawLineItem


def _raw(description: str, price: str = "0", quantity: str = "1", **extra) -> RawLineItem:
    unit_price = Decimal(price)
    qty = Decimal(quantity)
    return RawLineItem(
        description=description,
        quantity=qty,
        unit_price=unit_price,
        line_total=qty * unit_price,
        **extra,
    )


def test_rule_table_is_ordered_and_named():
    priorities = [rule.priority for rule in DEFAULT_RULES]
    assert priorities == sorted(priorities)
    assert len({rule.name for rule in DEFAULT_RULES}) == len(DEFAULT_RULES)


def test_labor_with_hours_pattern():
    item = classify_item(_raw("Body Labor 2.5 hrs", "60", "2.5"))
    assert item.category is CostCategory.LABOR
    assert item.matched_rule == "labor_time"
    # keyword + hours pattern + price inside the labor rate range
    assert item.classification_confidence == 0.9


def test_parts_keyword():
    item = classify_item(_raw("Front Bumper Cover", "350"))
    assert item.category is CostCategory.PARTS
    assert item.classification_confidence == 0.8


def test_parts_number_pattern():
    item = classify_item(_raw("52119-0X915 cover", "410"))
    assert item.category is CostCategory.PARTS
    assert item.matched_rule == "parts_components"


def test_labor_operation_keywords():
    item = classify_item(_raw("Additional Diagnostic Service", "120"))
    assert item.category is CostCategory.LABOR
    assert item.matched_rule == "labor_operations"


def test_materials_scaled_by_category_weight():
    item = classify_item(_raw("Engine Oil Change", "50"))
    assert item.category is CostCategory.MATERIALS
    # two signals (0.8) x materials weight (0.8)
    assert item.classification_confidence == 0.64


def test_unmatched_is_other_with_zero_confidence():
    item = classify_item(_raw("Mystery line", "10"))
    assert item.category is CostCategory.OTHER
    assert item.classification_confidence == 0.0
    assert item.matched_rule is None


def test_keyword_requires_word_boundary():
    item = classify_item(_raw("Partial refund", "10"))
    assert item.category is CostCategory.OTHER


def test_matching_hint_adds_a_signal():
    item = classify_item(_raw("Front Bumper Cover", "350", category_hint="parts"))
    assert item.classification_confidence == 0.9
    assert item.warnings == ()


def test_hint_alone_does_not_classify():
    item = classify_item(_raw("Mystery line", "10", category_hint="parts"))
    assert item.category is CostCategory.OTHER
    assert any("hint" in warning for warning in item.warnings)


def test_unknown_hint_warns():
    item = classify_item(_raw("Front Bumper Cover", "350", category_hint="widgets"))
    assert item.category is CostCategory.PARTS
    assert any("widgets" in warning for warning in item.warnings)


def test_incomplete_item_confidence_halved():
    item = classify_item(_raw("Front Bumper Cover", "350", missing_fields=("line_total",)))
    assert item.classification_confidence == 0.4
    assert any("line_total" in warning for warning in item.warnings)


def test_category_weight_from_config():
    config = ComparisonConfig(category_weights={CostCategory.PARTS: 0.5})
    item = classify_item(_raw("Front Bumper Cover", "350"), config=config)
    assert item.classification_confidence == 0.4


def test_custom_rules_priority_wins():
    rules = (
        ClassificationRule(name="late", category=CostCategory.PARTS, priority=20, keywords=("bumper",)),
        ClassificationRule(name="early", category=CostCategory.OVERHEAD, priority=10, keywords=("front",)),
    )
    item = classify_item(_raw("Front Bumper", "100"), rules=rules)
    assert item.matched_rule == "early"
    assert item.category is CostCategory.OVERHEAD


def test_classify_items_keeps_order_and_ids():
    raws = [_raw("Front Bumper Cover", "350"), _raw("Engine Oil Change", "50")]
    first = classify_items(raws, ItemSide.SUPPLEMENT)
    second = classify_items(raws, ItemSide.SUPPLEMENT)
    assert [item.index for item in first] == [0, 1]
    assert [item.item_id for item in first] == [item.item_id for item in second]
    assert first[0].item_id.startswith("supp-0000-")
    assert first == second


if __name__ == "__main__":
    run_checks(globals(), "Classifier Tests")
