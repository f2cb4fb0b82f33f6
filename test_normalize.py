"""
test_normalize.py - Normalization and Line-Item Coercion Tests

Validation for:
- normalize_description
- normalize_money / quantize_money
- stable_item_key
- coerce_line_item / coerce_line_items

Usage: python test_normalize.py
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from check_runner import run_checks
from errors import LineItemValidationError
from models import ItemSide, RawLineItem
from normalize import (
    coerce_line_item,
    coerce_line_items,
    normalize_description,
    normalize_money,
    quantize_money,
    stable_item_key,
)


def test_description_case_whitespace_and_punctuation():
    assert normalize_description("  Engine   Oil-Change! ") == "engine oil change"
    assert normalize_description("ENGINE OIL CHANGE") == normalize_description("engine oil change")


def test_description_empty_inputs():
    assert normalize_description(None) == ""
    assert normalize_description("") == ""
    assert normalize_description("   ") == ""


def test_description_accents_stripped():
    assert normalize_description("Café Crème") == "cafe creme"


def test_description_abbreviations_expanded():
    assert normalize_description("R&R Frt Bumper") == "remove and replace front bumper"
    assert normalize_description("Rt Headlamp Assy") == "right headlamp assembly"


def test_money_strings():
    assert normalize_money("$1,234.50") == Decimal("1234.50")
    assert normalize_money("(45.00)") == Decimal("-45.00")
    assert normalize_money("-$12.10") == Decimal("-12.10")
    assert normalize_money(" 7 ") == Decimal("7")


def test_money_numbers():
    assert normalize_money(12) == Decimal("12")
    assert normalize_money(0.1) == Decimal("0.1")
    assert normalize_money(Decimal("3.333")) == Decimal("3.333")


def test_money_unparsable_is_none():
    for value in (None, "", "n/a", "N/A", "unknown", "abc", float("nan"), float("inf"), True):
        assert normalize_money(value) is None, value


def test_quantize_half_up():
    assert quantize_money(Decimal("2.345")) == Decimal("2.35")
    assert quantize_money(Decimal("2.344")) == Decimal("2.34")
    assert quantize_money(Decimal("-2.345")) == Decimal("-2.35")
    assert quantize_money(Decimal("2.5"), Decimal("1")) == Decimal("3")


def test_stable_item_key_deterministic():
    first = stable_item_key(ItemSide.ORIGINAL, 3, "engine oil change")
    second = stable_item_key(ItemSide.ORIGINAL, 3, "engine oil change")
    assert first == second
    assert first.startswith("orig-0003-")
    assert stable_item_key(ItemSide.ORIGINAL, 4, "engine oil change") != first
    assert stable_item_key(ItemSide.SUPPLEMENT, 3, "engine oil change").startswith("supp-0003-")


def test_coerce_complete_record():
    item = coerce_line_item(
        {"Description": "Front Bumper Cover", "Quantity": 1, "Unit_Price": "350.00", "Line_Total": "350.00"}
    )
    assert item.description == "Front Bumper Cover"
    assert item.quantity == Decimal("1")
    assert item.unit_price == Decimal("350.00")
    assert item.line_total == Decimal("350.00")
    assert item.is_complete


def test_coerce_aliases_and_derived_total():
    item = coerce_line_item({"desc": "Shop Supplies", "qty": "2", "price": "$10.00", "category": "Materials"})
    assert item.line_total == Decimal("20.00")
    assert item.missing_fields == ("line_total",)
    assert item.category_hint == "materials"
    assert not item.is_complete


def test_coerce_missing_quantity_and_price():
    item = coerce_line_item({"description": "Towing", "total": "100"})
    assert item.quantity == Decimal("1")
    assert item.unit_price == Decimal("100")
    assert item.missing_fields == ("quantity", "unit_price")


def test_coerce_unparsable_price_recorded():
    item = coerce_line_item({"description": "Labor", "quantity": 2, "unit_price": "call", "line_total": 90})
    assert item.unit_price == Decimal("45")
    assert "unit_price" in item.missing_fields


def test_coerce_missing_description_recorded():
    item = coerce_line_item({"quantity": 1, "unit_price": 5, "line_total": 5})
    assert item.description == ""
    assert item.missing_fields == ("description",)


def test_coerce_negative_quantity_raises():
    with pytest.raises(LineItemValidationError) as info:
        coerce_line_item({"description": "Labor", "quantity": -1, "unit_price": 50}, ItemSide.SUPPLEMENT, 2)
    assert info.value.field == "quantity"
    assert info.value.side == "supplement"
    assert info.value.index == 2


def test_coerce_passthrough_raw_item():
    raw = RawLineItem(description="A", quantity=Decimal(1), unit_price=Decimal(2), line_total=Decimal(2))
    assert coerce_line_item(raw) is raw


def test_coerce_non_mapping_becomes_empty_item():
    for junk in (["Labor", 1, 50], None, "Engine Oil Change"):
        item = coerce_line_item(junk, ItemSide.SUPPLEMENT, 4)
        assert item.description == ""
        assert item.line_total == Decimal("0")
        assert item.missing_fields == ("description", "quantity", "unit_price", "line_total")
        assert not item.is_complete


def test_money_out_of_range_is_none():
    assert normalize_money("123456789012345678901234567890") is None
    assert normalize_money(Decimal("1E+12")) is None
    assert normalize_money(10**15) is None
    assert normalize_money("999999999999.99") == Decimal("999999999999.99")
    assert normalize_money("0E+40") == Decimal("0")


def test_coerce_out_of_range_amount_recorded():
    garbled = "123456789012345678901234567890"
    item = coerce_line_item(
        {"description": "Front Bumper Cover", "quantity": 1, "unit_price": garbled, "line_total": garbled}
    )
    assert item.unit_price == Decimal("0")
    assert item.line_total == Decimal("0")
    assert item.missing_fields == ("unit_price", "line_total")


def test_coerce_raw_item_out_of_range_recoerced():
    raw = RawLineItem(description="A", quantity=Decimal(1), unit_price=Decimal("1E+30"), line_total=Decimal(5))
    item = coerce_line_item(raw)
    assert item.unit_price == Decimal("5")
    assert item.missing_fields == ("unit_price",)


def test_coerce_items_preserves_order():
    items = coerce_line_items(
        [{"description": "B", "total": 2}, {"description": "A", "total": 1}],
        ItemSide.SUPPLEMENT,
    )
    assert [item.description for item in items] == ["B", "A"]
    assert coerce_line_items(None) == []


def test_coerce_items_rejects_single_mapping():
    with pytest.raises(LineItemValidationError):
        coerce_line_items({"description": "A", "total": 1})
    with pytest.raises(LineItemValidationError):
        coerce_line_items("Engine Oil Change")


if __name__ == "__main__":
    run_checks(globals(), "Normalization Tests")
