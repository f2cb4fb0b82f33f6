"""
test_variance.py - Variance Calculator Tests

Usage: python test_variance.py
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from check_runner import run_checks
from classify import classify_item
from config import ComparisonConfig
from models import (
    ChangeType,
    ClassifiedLineItem,
    ItemSide,
    RawLineItem,
    ResidualItem,
    ResidualKind,
    SignificanceTier,
)
from variance import annotate_variances, pair_variance, percent_change, residual_variance, significance_tier
from reconcile import reconcile


def _item(description: str, price: str, quantity: str = "1", side: ItemSide = ItemSide.ORIGINAL, index: int = 0) -> ClassifiedLineItem:
    qty = Decimal(quantity)
    unit_price = Decimal(price)
    raw = RawLineItem(description=description, quantity=qty, unit_price=unit_price, line_total=qty * unit_price)
    return classify_item(raw, side, index)


def test_percent_change_zero_baseline_is_none():
    assert percent_change(Decimal("5"), Decimal("0")) is None
    assert percent_change(Decimal("25"), Decimal("50")) == Decimal("50.00")
    assert percent_change(Decimal("1"), Decimal("3")) == Decimal("33.33")
    assert percent_change(Decimal("-2"), Decimal("3")) == Decimal("-66.67")


def test_matched_pair_scenario_a():
    original = _item("Engine Oil Change", "50")
    supplement = _item("Engine Oil Change", "75", side=ItemSide.SUPPLEMENT)
    record = pair_variance(original, supplement)
    assert record.total_delta == Decimal("25")
    assert record.total_pct == Decimal("50.00")
    assert record.unit_price_pct == Decimal("50.00")
    assert record.quantity_delta == 0
    assert record.quantity_pct == Decimal("0.00")
    assert record.change_type is ChangeType.INCREASE
    assert record.significance is SignificanceTier.EXTREME
    assert record.is_significant


def test_credit_line_percent_divides_by_signed_baseline():
    assert percent_change(Decimal("-25"), Decimal("-50")) == Decimal("50.00")
    original = _item("Insurance Deductible Credit", "-50")
    supplement = _item("Insurance Deductible Credit", "-75", side=ItemSide.SUPPLEMENT)
    record = pair_variance(original, supplement)
    assert record.total_delta == Decimal("-25")
    assert record.total_pct == Decimal("50.00")
    assert record.unit_price_pct == Decimal("50.00")
    assert record.change_type is ChangeType.DECREASE


def test_unchanged_pair_is_negligible():
    original = _item("Front Bumper Cover", "350")
    supplement = _item("Front Bumper Cover", "350", side=ItemSide.SUPPLEMENT)
    record = pair_variance(original, supplement)
    assert record.change_type is ChangeType.UNCHANGED
    assert record.significance is SignificanceTier.NEGLIGIBLE
    assert not record.is_significant


def test_decrease_pair():
    original = _item("Body Labor 3 hrs", "60", "3")
    supplement = _item("Body Labor 3 hrs", "60", "2.5", side=ItemSide.SUPPLEMENT)
    record = pair_variance(original, supplement)
    assert record.change_type is ChangeType.DECREASE
    assert record.total_delta == Decimal("-30.0")
    assert record.quantity_pct == Decimal("-16.67")
    assert record.unit_price_pct == Decimal("0.00")


def test_zero_baseline_pair_has_null_percentages():
    original = _item("Loaner Car", "0")
    supplement = _item("Loaner Car", "35", side=ItemSide.SUPPLEMENT)
    record = pair_variance(original, supplement)
    assert record.baseline_total == 0
    assert record.total_pct is None
    assert record.unit_price_pct is None
    assert record.total_delta == Decimal("35")


def test_new_residual_scenario_b():
    item = _item("Additional Diagnostic Service", "120", side=ItemSide.SUPPLEMENT)
    record = residual_variance(ResidualItem(item=item, kind=ResidualKind.NEW))
    assert record.total_delta == Decimal("120")
    assert record.total_pct is None
    assert record.baseline_total == 0
    assert record.change_type is ChangeType.NEW
    assert record.significance is SignificanceTier.MODERATE


def test_removed_residual_is_negative():
    item = _item("Front Bumper Cover", "350")
    record = residual_variance(ResidualItem(item=item, kind=ResidualKind.REMOVED))
    assert record.total_delta == Decimal("-350")
    assert record.change_type is ChangeType.REMOVED
    assert record.total_pct is None
    assert record.significance is SignificanceTier.MAJOR


def test_either_threshold_elevates_tier():
    config = ComparisonConfig()
    # 3% on a large amount: percentage says minor, amount says major.
    assert significance_tier(Decimal("300"), Decimal("3.00"), config) is SignificanceTier.MAJOR
    # 60% on a small amount: amount says negligible, percentage says extreme.
    assert significance_tier(Decimal("3"), Decimal("60.00"), config) is SignificanceTier.EXTREME
    assert significance_tier(Decimal("0"), None, config) is SignificanceTier.NEGLIGIBLE


def test_significant_tier_is_configurable():
    config = ComparisonConfig(significant_tier=SignificanceTier.MAJOR)
    original = _item("Engine Oil Change", "50")
    supplement = _item("Engine Oil Change", "55", side=ItemSide.SUPPLEMENT)
    record = pair_variance(original, supplement, config)
    assert record.significance is SignificanceTier.MODERATE
    assert not record.is_significant


def test_null_percentage_law_across_result():
    originals = [_item("Engine Oil Change", "50"), _item("Loaner Car", "0", index=1), _item("Front Bumper Cover", "350", index=2)]
    supplements = [
        _item("Engine Oil Change", "75", side=ItemSide.SUPPLEMENT),
        _item("Loaner Car", "35", side=ItemSide.SUPPLEMENT, index=1),
        _item("Additional Diagnostic Service", "120", side=ItemSide.SUPPLEMENT, index=2),
    ]
    result = annotate_variances(reconcile(originals, supplements))
    records = [pair.variance for pair in result.matched]
    records += [residual.variance for residual in result.unmatched_original + result.new_supplement]
    assert len(records) == 4
    for record in records:
        assert record is not None
        assert (record.total_pct is None) == (record.baseline_total == 0)
        assert (record.unit_price_pct is None) == (record.baseline_unit_price == 0)
        assert (record.quantity_pct is None) == (record.baseline_quantity == 0)


if __name__ == "__main__":
    run_checks(globals(), "Variance Calculator Tests")
