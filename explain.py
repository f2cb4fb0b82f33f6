"""
explain.py - Human-readable and JSON-ready comparison formatting.

This module converts a structured `ComparisonAnalysis` object into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for APIs/logging/storage

Neither formatter re-runs matching or statistics; everything shown is read
straight off the analysis.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from logging_config import get_logger
from models import (
    CategorySubtotal,
    ComparisonAnalysis,
    DiscrepancyType,
    MatchedItemPair,
    ResidualItem,
    RiskLevel,
)

logger = get_logger(__name__)

LABEL_NAMES: dict[DiscrepancyType, str] = {
    DiscrepancyType.CALCULATION_ERROR: "Calculation Error",
    DiscrepancyType.DUPLICATE_ITEM: "Duplicate Item",
    DiscrepancyType.MISSING_ITEM: "Missing Coverage",
    DiscrepancyType.SUSPICIOUS_PRICING: "Suspicious Pricing",
    DiscrepancyType.DATA_INCONSISTENCY: "Data Inconsistency",
}

OUTPUT_WIDTH = 64
SEPARATOR = "=" * OUTPUT_WIDTH
RULE = "-" * OUTPUT_WIDTH
MAX_DISCREPANCY_DISPLAY = 8
MAX_CHANGE_DISPLAY = 10


def _money(value: Decimal, places: int = 2) -> str:
    sign = "-" if value < 0 else ""
    shown = abs(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    return f"{sign}${shown:,f}"


def _signed_money(value: Decimal, places: int = 2) -> str:
    return f"+{_money(value, places)}" if value > 0 else _money(value, places)


def _percent(value: Optional[Decimal]) -> str:
    if value is None:
        return "n/a"
    return f"{value:+.2f}%"


def ordered_categories(analysis: ComparisonAnalysis) -> list[CategorySubtotal]:
    """Categories with any activity, largest absolute net change first."""
    active = [
        subtotal
        for subtotal in analysis.statistics.category_subtotals
        if subtotal.original_total != 0 or subtotal.supplement_total != 0 or subtotal.item_count
    ]
    return sorted(active, key=lambda subtotal: (-abs(subtotal.net_change), subtotal.category.value))


def _largest_changes(analysis: ComparisonAnalysis) -> list[tuple[str, Decimal, Optional[Decimal], str]]:
    rows: list[tuple[str, Decimal, Optional[Decimal], str]] = []
    for pair in analysis.reconciliation.matched:
        if pair.variance is not None and pair.variance.total_delta != 0:
            rows.append((pair.supplement.description, pair.variance.total_delta, pair.variance.total_pct, pair.stage.value))
    for residual in analysis.reconciliation.unmatched_original + analysis.reconciliation.new_supplement:
        if residual.variance is not None:
            rows.append((residual.item.description, residual.variance.total_delta, None, residual.kind.value))
    return sorted(rows, key=lambda row: (-abs(row[1]), row[0]))


def format_report(analysis: ComparisonAnalysis | None) -> str:
    """Format a ComparisonAnalysis into a clean, human-readable text block."""
    if analysis is None:
        logger.error("explain_input_error | analysis_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n" + "  ERROR: No analysis data available\n" + SEPARATOR + "\n"

    risk = analysis.risk
    grand = analysis.statistics.grand_total
    reconciliation = analysis.reconciliation
    places = analysis.metadata.decimal_precision
    lines: list[str] = [""]

    lines.append(SEPARATOR)
    lines.append(f"  Supplement Review - {risk.level.value.upper()} RISK ({risk.score:.1f}/100)")
    lines.append(SEPARATOR)

    lines.append("")
    lines.append(f"  Original total:    {_money(grand.original_total, places):>14}")
    lines.append(f"  Supplement total:  {_money(grand.supplement_total, places):>14}")
    lines.append(f"  Net change:        {_signed_money(grand.net_change, places):>14}  ({_percent(grand.net_change_pct)})")

    lines.append("")
    stage_counts = reconciliation.stage_counts
    lines.append(
        f"  Matched {len(reconciliation.matched)} line(s) "
        f"[exact {stage_counts.get('exact', 0)}, fuzzy {stage_counts.get('fuzzy', 0)}, "
        f"fallback {stage_counts.get('fallback', 0)}]"
    )
    lines.append(
        f"  Removed {len(reconciliation.unmatched_original)} | New {len(reconciliation.new_supplement)} "
        f"| Significant {grand.significant_count}"
    )

    categories = ordered_categories(analysis)
    if categories:
        lines.append("")
        lines.append("  By category:")
        lines.append(f"    {'Category':<12} {'Original':>12} {'Supplement':>12} {'Change':>13}")
        lines.append("    " + "-" * 52)
        for subtotal in categories:
            lines.append(
                f"    {subtotal.category.value:<12} {_money(subtotal.original_total, places):>12} "
                f"{_money(subtotal.supplement_total, places):>12} {_signed_money(subtotal.net_change, places):>13}"
            )

    changes = _largest_changes(analysis)
    if changes:
        lines.append("")
        lines.append("  Largest changes:")
        for description, delta, pct, label in changes[:MAX_CHANGE_DISPLAY]:
            short = description[:30] + ".." if len(description) > 32 else description
            lines.append(f"    • {short:<32} {_signed_money(delta, places):>12}  {_percent(pct):>9}  [{label}]")
        if len(changes) > MAX_CHANGE_DISPLAY:
            lines.append(f"    • ... and {len(changes) - MAX_CHANGE_DISPLAY} more change(s)")

    lines.append("")
    lines.append("  Discrepancies:")
    discrepancies = list(analysis.discrepancies)
    if not discrepancies:
        lines.append("    • (none detected)")
    for discrepancy in discrepancies[:MAX_DISCREPANCY_DISPLAY]:
        lines.append(
            f"    • {discrepancy.discrepancy_id} [{discrepancy.severity.value}] "
            f"{LABEL_NAMES[discrepancy.type]}: {discrepancy.description}"
        )
    if len(discrepancies) > MAX_DISCREPANCY_DISPLAY:
        lines.append(f"    • ... and {len(discrepancies) - MAX_DISCREPANCY_DISPLAY} more discrepancy(ies)")

    lines.append("")
    lines.append("  Recommendations:")
    for position, recommendation in enumerate(risk.recommendations, start=1):
        lines.append(f"    {position}. {recommendation}")

    quality = analysis.statistics.data_quality
    if quality.issues:
        lines.append("")
        lines.append(f"  WARNING: Data quality {quality.score:.0%}")
        for issue in quality.issues:
            lines.append(f"    {issue}")

    if risk.level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        lines.append("")
        lines.append("  WARNING: Manual review required before approval")

    lines.append("")
    lines.append(RULE)
    lines.append(f"  Analysis {analysis.metadata.analysis_id}  |  engine {analysis.metadata.engine_version}")
    lines.append(SEPARATOR)
    lines.append("")
    return "\n".join(lines)


def _pair_dict(pair: MatchedItemPair) -> dict[str, Any]:
    return {
        "original_id": pair.original.item_id,
        "supplement_id": pair.supplement.item_id,
        "description": pair.supplement.description,
        "category": pair.category.value,
        "stage": pair.stage.value,
        "score": round(pair.score, 4),
        "signals": pair.signals.model_dump(mode="json"),
        "variance": pair.variance.model_dump(mode="json") if pair.variance is not None else None,
    }


def _residual_dict(residual: ResidualItem) -> dict[str, Any]:
    return {
        "item_id": residual.item.item_id,
        "description": residual.item.description,
        "category": residual.category.value,
        "kind": residual.kind.value,
        "line_total": str(residual.item.line_total),
        "variance": residual.variance.model_dump(mode="json") if residual.variance is not None else None,
    }


def format_analysis_json(analysis: ComparisonAnalysis | None) -> dict:
    """Format a ComparisonAnalysis as a structured JSON-compatible dictionary.

    Monetary values are strings so no precision is lost in transit.
    """
    if analysis is None:
        logger.error("explain_json_input_error | analysis_none=True | fallback=error_payload")
        return {
            "status": "error",
            "risk": None,
            "totals": None,
            "categories": [],
            "discrepancies": [],
            "warnings": ["Analysis object was None"],
        }

    statistics = analysis.statistics
    reconciliation = analysis.reconciliation

    warnings: list[str] = list(statistics.data_quality.issues)
    for item in analysis.original_items + analysis.supplement_items:
        warnings.extend(f"{item.item_id}: {warning}" for warning in item.warnings)

    return {
        "status": "ok",
        "analysis_id": analysis.metadata.analysis_id,
        "content_digest": analysis.content_digest,
        "risk": analysis.risk.model_dump(mode="json"),
        "totals": statistics.grand_total.model_dump(mode="json"),
        "categories": [subtotal.model_dump(mode="json") for subtotal in ordered_categories(analysis)],
        "change_counts": statistics.change_counts.model_dump(mode="json"),
        "descriptive": statistics.descriptive.model_dump(mode="json"),
        "data_quality": statistics.data_quality.model_dump(mode="json"),
        "reconciliation": {
            "stage_counts": dict(reconciliation.stage_counts),
            "match_rate": reconciliation.match_rate,
            "matched": [_pair_dict(pair) for pair in reconciliation.matched],
            "removed": [_residual_dict(residual) for residual in reconciliation.unmatched_original],
            "new": [_residual_dict(residual) for residual in reconciliation.new_supplement],
        },
        "discrepancies": [discrepancy.model_dump(mode="json") for discrepancy in analysis.discrepancies],
        "metadata": analysis.metadata.model_dump(mode="json"),
        "warnings": warnings,
    }
