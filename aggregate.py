"""
aggregate.py - Variance statistics over a reconciled, variance-annotated result.

Produces category subtotals, change-type counts, descriptive statistics
and a data-quality score. All arithmetic is Decimal; every collection is
sorted before it is summed so the result never depends on iteration order.
"""

from __future__ import annotations

from decimal import Decimal, localcontext
from typing import Iterable, Sequence

from config import ComparisonConfig
from errors import CalculationError
from logging_config import get_logger
from models import (
    CategorySubtotal,
    ChangeCounts,
    ChangeType,
    ClassifiedLineItem,
    CostCategory,
    DataQuality,
    DescriptiveStats,
    GrandTotal,
    ReconciliationResult,
    VarianceRecord,
    VarianceStatistics,
)
from normalize import quantize_money
from variance import percent_change

logger = get_logger(__name__)

COMPLETENESS_WEIGHT = 0.4
CONSISTENCY_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.2


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(sorted(values), Decimal("0"))


def _records(result: ReconciliationResult) -> list[tuple[str, CostCategory, VarianceRecord]]:
    """(item id, reporting category, variance) for every reconciled item, in a stable order."""
    rows: list[tuple[str, CostCategory, VarianceRecord]] = []
    for pair in result.matched:
        if pair.variance is None:
            raise CalculationError(f"matched pair {pair.pair_id} has no variance record")
        rows.append((pair.supplement.item_id, pair.category, pair.variance))
    for residual in result.unmatched_original + result.new_supplement:
        if residual.variance is None:
            raise CalculationError(f"residual item {residual.item.item_id} has no variance record")
        rows.append((residual.item.item_id, residual.category, residual.variance))
    return sorted(rows, key=lambda row: row[0])


def count_changes(records: Iterable[VarianceRecord]) -> ChangeCounts:
    counts = {change.value: 0 for change in ChangeType}
    for record in records:
        counts[record.change_type.value] += 1
    return ChangeCounts(**counts)


def descriptive_statistics(values: Sequence[Decimal], quantum: Decimal = Decimal("0.01")) -> DescriptiveStats:
    """Mean, median, population standard deviation and range in exact Decimal."""
    if not values:
        return DescriptiveStats()

    ordered = sorted(values)
    count = len(ordered)
    with localcontext() as ctx:
        ctx.prec = 34
        total = sum(ordered, Decimal("0"))
        mean = total / count
        middle = count // 2
        if count % 2:
            median = ordered[middle]
        else:
            median = (ordered[middle - 1] + ordered[middle]) / 2
        variance = sum(((value - mean) ** 2 for value in ordered), Decimal("0")) / count
        std_dev = variance.sqrt()

    return DescriptiveStats(
        count=count,
        mean=quantize_money(mean, quantum),
        median=quantize_money(median, quantum),
        std_dev=quantize_money(std_dev, quantum),
        minimum=quantize_money(ordered[0], quantum),
        maximum=quantize_money(ordered[-1], quantum),
    )


def data_quality(
    items: Sequence[ClassifiedLineItem],
    config: ComparisonConfig | None = None,
) -> DataQuality:
    """Weighted completeness / consistency / classification-confidence score."""
    config = config or ComparisonConfig()
    if not items:
        return DataQuality(
            completeness=1.0,
            consistency=1.0,
            classification_confidence=0.0,
            score=0.0,
            issues=("No line items supplied",),
        )

    issues: list[str] = []
    complete = [item for item in items if item.is_complete]
    completeness = len(complete) / len(items)
    if len(complete) < len(items):
        issues.append(f"{len(items) - len(complete)} item(s) have missing or unparsable fields")

    # Incomplete items are excluded from the strict arithmetic check.
    consistent = [
        item
        for item in complete
        if abs(item.quantity * item.unit_price - item.line_total) <= config.calculation_tolerance
    ]
    consistency = len(consistent) / len(complete) if complete else 0.0
    if complete and len(consistent) < len(complete):
        issues.append(f"{len(complete) - len(consistent)} item(s) where quantity x price != total")

    confidences = sorted(item.classification_confidence for item in items)
    avg_confidence = sum(confidences) / len(confidences)
    unclassified = sum(1 for item in items if item.matched_rule is None)
    if unclassified:
        issues.append(f"{unclassified} item(s) could not be classified")

    score = (
        completeness * COMPLETENESS_WEIGHT
        + consistency * CONSISTENCY_WEIGHT
        + avg_confidence * CONFIDENCE_WEIGHT
    )
    return DataQuality(
        completeness=round(completeness, 4),
        consistency=round(consistency, 4),
        classification_confidence=round(avg_confidence, 4),
        score=round(min(1.0, score), 4),
        issues=tuple(issues),
    )


def reconstruct_net_change(result: ReconciliationResult) -> Decimal:
    """Bottom-up net change: the sum of every item's signed total delta."""
    return _sum(record.total_delta for _, _, record in _records(result))


def compute_statistics(
    result: ReconciliationResult,
    config: ComparisonConfig | None = None,
) -> VarianceStatistics:
    """Roll per-item variances into subtotals, distributions and quality metrics."""
    config = config or ComparisonConfig()
    quantum = config.money_quantum
    rows = _records(result)

    original_items = sorted(
        [pair.original for pair in result.matched] + [residual.item for residual in result.unmatched_original],
        key=lambda item: item.index,
    )
    supplement_items = sorted(
        [pair.supplement for pair in result.matched] + [residual.item for residual in result.new_supplement],
        key=lambda item: item.index,
    )

    subtotals: list[CategorySubtotal] = []
    for category in CostCategory:
        original_total = _sum(item.line_total for item in original_items if item.category == category)
        supplement_total = _sum(item.line_total for item in supplement_items if item.category == category)
        category_records = [record for _, row_category, record in rows if row_category == category]
        net = supplement_total - original_total
        subtotals.append(
            CategorySubtotal(
                category=category,
                original_total=quantize_money(original_total, quantum),
                supplement_total=quantize_money(supplement_total, quantum),
                net_change=quantize_money(net, quantum),
                net_change_pct=percent_change(net, original_total),
                item_count=len(category_records),
                significant_count=sum(1 for record in category_records if record.is_significant),
                change_counts=count_changes(category_records),
            )
        )

    original_sum = _sum(item.line_total for item in original_items)
    supplement_sum = _sum(item.line_total for item in supplement_items)
    top_down = supplement_sum - original_sum
    bottom_up = reconstruct_net_change(result)
    if abs(top_down - bottom_up) > config.net_change_tolerance:
        logger.error(
            "statistics_invariant_error | top_down=%s | bottom_up=%s | tolerance=%s",
            top_down,
            bottom_up,
            config.net_change_tolerance,
        )
        raise CalculationError(
            f"net change {top_down} does not match the per-item variance sum {bottom_up}"
        )

    significant_ids = tuple(item_id for item_id, _, record in rows if record.is_significant)
    grand_total = GrandTotal(
        original_total=quantize_money(original_sum, quantum),
        supplement_total=quantize_money(supplement_sum, quantum),
        net_change=quantize_money(top_down, quantum),
        net_change_pct=percent_change(top_down, original_sum),
        item_count=len(rows),
        significant_count=len(significant_ids),
    )

    statistics = VarianceStatistics(
        category_subtotals=tuple(subtotals),
        grand_total=grand_total,
        change_counts=count_changes(record for _, _, record in rows),
        descriptive=descriptive_statistics([record.total_delta for _, _, record in rows], quantum),
        data_quality=data_quality(original_items + supplement_items, config),
        significant_item_ids=significant_ids,
    )
    logger.info(
        "statistics_complete | original_total=%s | supplement_total=%s | net_change=%s | items=%s | significant=%s | quality=%.2f",
        grand_total.original_total,
        grand_total.supplement_total,
        grand_total.net_change,
        grand_total.item_count,
        grand_total.significant_count,
        statistics.data_quality.score,
    )
    return statistics
