"""
test_integration.py - Full Pipeline Integration Tests

Acceptance tests for the complete comparison pipeline:
coerce -> classify -> reconcile -> variance -> statistics -> detect -> risk -> explain

Usage: python test_integration.py
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal

# Ensure local imports resolve from project root.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from analyze import ENGINE_VERSION, analyze_comparison
from check_runner import run_checks
from config import ComparisonConfig
from errors import LineItemValidationError
from explain import format_analysis_json, format_report
from models import ChangeType, DiscrepancyType, MatchStage, RawLineItem

OIL_50 = {"description": "Engine Oil Change", "quantity": 1, "unit_price": 50, "line_total": 50}
OIL_75 = {"description": "Engine Oil Change", "quantity": 1, "unit_price": 75, "line_total": 75}
DIAGNOSTIC = {"description": "Additional Diagnostic Service", "quantity": 1, "unit_price": 120, "line_total": 120}

REALISTIC_ORIGINAL = [
    {"description": "R&R Frt Bumper Cover", "quantity": 1, "unit_price": "412.50", "line_total": "412.50"},
    {"description": "Body Labor 2.5 hrs", "quantity": "2.5", "unit_price": "62.00", "line_total": "155.00"},
    {"description": "Paint Materials", "quantity": 1, "unit_price": "180.00", "line_total": "180.00"},
    {"description": "Shop Supplies", "quantity": 1, "unit_price": "25.00", "line_total": "25.00"},
    {"description": "Shop Supplies", "quantity": 1, "unit_price": "25.00", "line_total": "25.00"},
    {"description": "Hazardous Waste Disposal Fee", "quantity": 1, "unit_price": "15.00", "line_total": "15.00"},
    {"description": "Rt Headlamp Assy", "quantity": 1, "unit_price": "289.99", "line_total": "289.99"},
]
REALISTIC_SUPPLEMENT = [
    {"description": "Remove and Replace Front Bumper Cover", "quantity": 1, "unit_price": "412.50", "line_total": "412.50"},
    {"description": "Body Labor 3.5 hrs", "quantity": "3.5", "unit_price": "62.00", "line_total": "217.00"},
    {"description": "Paint Materials", "quantity": 1, "unit_price": "240.00", "line_total": "240.00"},
    {"description": "Shop Supplies", "quantity": 1, "unit_price": "25.00", "line_total": "25.00"},
    {"description": "Shop Supplies", "quantity": 1, "unit_price": "25.00", "line_total": "25.00"},
    {"description": "Right Headlamp Assembly", "quantity": 1, "unit_price": "305.00", "line_total": "305.00"},
    {"description": "Frame Machine Setup", "quantity": 1, "unit_price": "150.00", "line_total": "150.00"},
    {"description": "Additional Diagnostic Service", "quantity": 1, "unit_price": "120.00", "line_total": "120.00"},
]

FIXED_TIME = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def test_scenario_a_price_increase():
    analysis = analyze_comparison([OIL_50], [OIL_75])
    reconciliation = analysis.reconciliation
    assert len(reconciliation.matched) == 1
    variance = reconciliation.matched[0].variance
    assert variance.total_delta == Decimal("25")
    assert variance.total_pct == Decimal("50.00")
    assert variance.change_type is ChangeType.INCREASE
    assert analysis.statistics.grand_total.net_change == Decimal("25.00")


def test_scenario_b_new_item():
    analysis = analyze_comparison([OIL_50], [OIL_50, DIAGNOSTIC])
    new = analysis.reconciliation.new_supplement
    assert len(new) == 1
    assert new[0].item.description == "Additional Diagnostic Service"
    assert new[0].variance.total_delta == Decimal("120")
    assert new[0].variance.total_pct is None


def test_scenario_c_all_removed():
    original = [
        {"description": "Front Bumper Cover", "quantity": 1, "unit_price": 500, "line_total": 500},
        {"description": "Body Labor 2.5 hrs", "quantity": "2.5", "unit_price": 120, "line_total": 300},
        {"description": "Paint Materials", "quantity": 1, "unit_price": 200, "line_total": 200},
    ]
    analysis = analyze_comparison(original, [])
    assert len(analysis.reconciliation.unmatched_original) == 3
    assert analysis.statistics.grand_total.net_change == Decimal("-1000.00")
    assert analysis.risk.score >= 50.0


def test_scenario_d_duplicates_not_merged():
    supplement = [OIL_50, {"description": "Shop Supplies", "unit_price": 25, "quantity": 1, "line_total": 25}]
    supplement.append({"description": "SHOP SUPPLIES", "unit_price": 25, "quantity": 1, "line_total": 25})
    analysis = analyze_comparison([OIL_50], supplement)
    assert len(analysis.reconciliation.new_supplement) == 2
    types = [discrepancy.type for discrepancy in analysis.discrepancies]
    assert DiscrepancyType.DUPLICATE_ITEM in types


def test_realistic_estimate_pairs_rewordings():
    analysis = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT)
    reconciliation = analysis.reconciliation
    by_original = {pair.original.description: pair for pair in reconciliation.matched}
    assert by_original["R&R Frt Bumper Cover"].stage is MatchStage.EXACT
    assert by_original["Rt Headlamp Assy"].stage is MatchStage.EXACT
    assert by_original["Body Labor 2.5 hrs"].supplement.description == "Body Labor 3.5 hrs"
    removed = [residual.item.description for residual in reconciliation.unmatched_original]
    assert removed == ["Hazardous Waste Disposal Fee"]
    new = sorted(residual.item.description for residual in reconciliation.new_supplement)
    assert new == ["Additional Diagnostic Service", "Frame Machine Setup"]


def test_partition_completeness():
    analysis = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT)
    reconciliation = analysis.reconciliation
    assert len(reconciliation.matched) + len(reconciliation.unmatched_original) == len(REALISTIC_ORIGINAL)
    assert len(reconciliation.matched) + len(reconciliation.new_supplement) == len(REALISTIC_SUPPLEMENT)
    ids = [pair.original.item_id for pair in reconciliation.matched]
    ids += [pair.supplement.item_id for pair in reconciliation.matched]
    ids += [residual.item.item_id for residual in reconciliation.unmatched_original + reconciliation.new_supplement]
    assert len(ids) == len(set(ids))


def test_net_change_reconstruction():
    analysis = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT)
    reconciliation = analysis.reconciliation
    bottom_up = sum(
        (pair.variance.total_delta for pair in reconciliation.matched),
        Decimal("0"),
    ) + sum(
        (residual.variance.total_delta for residual in reconciliation.unmatched_original + reconciliation.new_supplement),
        Decimal("0"),
    )
    grand = analysis.statistics.grand_total
    assert abs(grand.net_change - bottom_up) <= Decimal("0.01")
    assert grand.net_change == grand.supplement_total - grand.original_total


def test_null_percentage_law():
    analysis = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT)
    reconciliation = analysis.reconciliation
    records = [pair.variance for pair in reconciliation.matched]
    records += [residual.variance for residual in reconciliation.unmatched_original + reconciliation.new_supplement]
    for record in records:
        assert (record.total_pct is None) == (record.baseline_total == 0)


def test_determinism_identical_output():
    first = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT, timestamp=FIXED_TIME)
    second = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT, timestamp=FIXED_TIME)
    assert first.content_digest == second.content_digest
    assert first.model_dump_json(exclude={"metadata"}) == second.model_dump_json(exclude={"metadata"})
    assert first.metadata.analysis_id == second.metadata.analysis_id
    assert first.metadata.engine_version == ENGINE_VERSION


def test_config_changes_analysis_id():
    default = analyze_comparison([OIL_50], [OIL_75])
    strict = analyze_comparison([OIL_50], [OIL_75], ComparisonConfig(fuzzy_threshold=0.8))
    assert default.metadata.analysis_id != strict.metadata.analysis_id
    assert default.metadata.config_fingerprint != strict.metadata.config_fingerprint


def test_accepts_raw_line_items():
    raw = RawLineItem(
        description="Engine Oil Change",
        quantity=Decimal("1"),
        unit_price=Decimal("50"),
        line_total=Decimal("50"),
    )
    analysis = analyze_comparison([raw], [OIL_75])
    assert len(analysis.reconciliation.matched) == 1


def test_malformed_item_degrades_but_does_not_abort():
    supplement = [OIL_75, {"description": "Shop Supplies", "unit_price": "n/a", "line_total": "30"}]
    analysis = analyze_comparison([OIL_50], supplement)
    assert analysis.statistics.data_quality.completeness < 1.0
    assert any(d.type is DiscrepancyType.DATA_INCONSISTENCY for d in analysis.discrepancies)


def test_non_mapping_entry_is_flagged_not_fatal():
    analysis = analyze_comparison([None, OIL_50], [OIL_75, "Shop Supplies"])
    reconciliation = analysis.reconciliation
    assert len(reconciliation.matched) == 1
    assert reconciliation.matched[0].variance.total_delta == Decimal("25")
    assert len(reconciliation.unmatched_original) == 1
    assert len(reconciliation.new_supplement) == 1
    assert analysis.statistics.grand_total.net_change == Decimal("25.00")
    assert analysis.statistics.data_quality.completeness < 1.0


def test_garbled_huge_amount_is_flagged_not_fatal():
    garbled = "123456789012345678901234567890"
    original = [{"description": "Front Bumper Cover", "quantity": 1, "unit_price": garbled, "line_total": garbled}]
    supplement = [{"description": "Front Bumper Cover", "quantity": 1, "unit_price": 400, "line_total": 400}]
    analysis = analyze_comparison(original, supplement)
    assert analysis.original_items[0].raw.missing_fields == ("unit_price", "line_total")
    assert analysis.statistics.grand_total.original_total == Decimal("0.00")
    assert any(d.type is DiscrepancyType.DATA_INCONSISTENCY for d in analysis.discrepancies)


def test_negative_quantity_aborts():
    with pytest.raises(LineItemValidationError):
        analyze_comparison([OIL_50], [{"description": "Engine Oil Change", "quantity": -1, "unit_price": 50}])


def test_text_report():
    analysis = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT)
    report = format_report(analysis)
    assert "Supplement Review" in report
    assert analysis.risk.level.value.upper() in report
    assert "By category:" in report
    assert "Recommendations:" in report
    assert format_report(None).strip().startswith("=")


def test_json_report_is_serializable():
    analysis = analyze_comparison(REALISTIC_ORIGINAL, REALISTIC_SUPPLEMENT)
    payload = format_analysis_json(analysis)
    decoded = json.loads(json.dumps(payload))
    assert decoded["status"] == "ok"
    assert decoded["content_digest"] == analysis.content_digest
    assert decoded["totals"]["net_change"] == str(analysis.statistics.grand_total.net_change)
    assert len(decoded["reconciliation"]["matched"]) == len(analysis.reconciliation.matched)
    assert format_analysis_json(None)["status"] == "error"


if __name__ == "__main__":
    run_checks(globals(), "Integration Tests")
