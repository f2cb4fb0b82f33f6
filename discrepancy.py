"""
discrepancy.py - Anomaly checks over a variance-annotated reconciliation.

Each check is an independent function returning unsorted findings:

    check_calculation_errors   quantity x unit_price disagrees with line_total
    check_duplicates           near-identical description at the same price
                               repeated on one estimate
    check_round_number_bias    too many new/changed supplement prices that are
                               whole multiples of ten
    check_markup               unit-price increase far outside its category
    check_missing_coverage     category billed on the original with nothing on
                               the supplement and no removed items explaining it
    check_data_inconsistency   substituted fields, category changes in a pair
    check_statistical_outliers supplement unit prices or totals with a large
                               z-score against the rest of the supplement
    check_benford_digits       supplement totals whose leading digits depart
                               from the Benford distribution
    check_excessive_labor      labor hours above the limit for the vehicle system
    check_part_switch          OEM part replaced by aftermarket at no discount
    check_rarely_damaged_parts new lines for parts a collision seldom damages

detect_discrepancies() runs them all, derives severity from impact x
confidence, sorts, then assigns DSC-nnn ids. Ids are assigned after sorting
so they depend on content only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, localcontext
from statistics import median
from typing import Callable, Sequence

from config import ComparisonConfig
from logging_config import get_logger
from models import (
    ClassifiedLineItem,
    CostCategory,
    Discrepancy,
    DiscrepancyType,
    ItemSide,
    ReconciliationResult,
    Severity,
    VarianceStatistics,
)
from normalize import quantize_money
from reconcile import description_similarity
from vehicle import is_rarely_damaged, max_labor_hours, part_origin

logger = get_logger(__name__)

# impact x confidence at or above each floor selects the severity
SEVERITY_FLOORS: tuple[tuple[Decimal, Severity], ...] = (
    (Decimal("1000"), Severity.CRITICAL),
    (Decimal("250"), Severity.HIGH),
    (Decimal("50"), Severity.MEDIUM),
)

CALCULATION_CONFIDENCE = 0.95
DUPLICATE_EXACT_CONFIDENCE = 0.9
DUPLICATE_NEAR_CONFIDENCE = 0.75
MARKUP_DISTRIBUTION_CONFIDENCE = 0.75
MARKUP_THRESHOLD_CONFIDENCE = 0.6
MISSING_COVERAGE_CONFIDENCE = 0.6
INCOMPLETE_ITEM_CONFIDENCE = 0.5
CATEGORY_CHANGE_CONFIDENCE = 0.4

ROUND_NUMBER_MIN_SAMPLE = 3
ROUND_NUMBER_MIN_COUNT = 2
MARKUP_MIN_DISTRIBUTION = 3
MARKUP_MEDIAN_MULTIPLE = Decimal("2")

OUTLIER_MIN_ITEMS = 3
# z-score at which outlier confidence reaches 1.0
OUTLIER_FULL_CONFIDENCE_Z = 3.0
OUTLIER_METRICS = (("unit_price", "unit price"), ("line_total", "line total"))

# Expected share of each leading digit 1-9.
BENFORD_EXPECTED: tuple[float, ...] = tuple(math.log10(1 + 1 / digit) for digit in range(1, 10))
# Chi-square critical values at 8 degrees of freedom, strictest first.
BENFORD_CRITICAL: tuple[tuple[float, float], ...] = ((20.090, 0.99), (15.507, 0.95))
BENFORD_DIGIT_EXCESS = 0.05

LABOR_HOURS_RULE = "labor_time"
EXCESSIVE_LABOR_CONFIDENCE = 0.8
PART_SWITCH_CONFIDENCE = 0.9
RARELY_DAMAGED_CONFIDENCE = 0.6


@dataclass(frozen=True)
class Finding:
    """A discrepancy before severity and id are assigned."""

    type: DiscrepancyType
    description: str
    affected_item_ids: tuple[str, ...]
    estimated_impact: Decimal
    confidence: float
    recommended_action: str


def severity_for(impact: Decimal, confidence: float) -> Severity:
    """Severity from monetary impact weighted by detection confidence."""
    weighted = abs(impact) * Decimal(str(confidence))
    for floor, severity in SEVERITY_FLOORS:
        if weighted >= floor:
            return severity
    return Severity.LOW


def _side_items(result: ReconciliationResult) -> tuple[list[ClassifiedLineItem], list[ClassifiedLineItem]]:
    originals = [pair.original for pair in result.matched]
    originals += [residual.item for residual in result.unmatched_original]
    supplements = [pair.supplement for pair in result.matched]
    supplements += [residual.item for residual in result.new_supplement]
    return sorted(originals, key=lambda item: item.index), sorted(supplements, key=lambda item: item.index)


def _is_round_price(price: Decimal) -> bool:
    """Whole-dollar amount ending in at least one zero."""
    if price <= 0 or price != price.to_integral_value():
        return False
    return int(price) % 10 == 0


def check_calculation_errors(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Complete items whose extended amount disagrees with quantity x price."""
    findings: list[Finding] = []
    originals, supplements = _side_items(result)
    for item in originals + supplements:
        # Substituted fields were derived arithmetically, so they cannot disagree.
        if not item.is_complete:
            continue
        expected = item.quantity * item.unit_price
        difference = item.line_total - expected
        if abs(difference) <= config.calculation_tolerance:
            continue
        findings.append(
            Finding(
                type=DiscrepancyType.CALCULATION_ERROR,
                description=(
                    f"{item.side.value.title()} line '{item.description}': "
                    f"{item.quantity} x ${item.unit_price} = ${quantize_money(expected, config.money_quantum)}, "
                    f"but the line total is ${item.line_total}"
                ),
                affected_item_ids=(item.item_id,),
                estimated_impact=quantize_money(abs(difference), config.money_quantum),
                confidence=CALCULATION_CONFIDENCE,
                recommended_action="Recalculate the line and confirm the billed total with the shop",
            )
        )
    return findings


def _duplicate_clusters(
    items: Sequence[ClassifiedLineItem],
    threshold: float,
) -> list[list[ClassifiedLineItem]]:
    """Group items by equal unit price and near-identical description.

    Each cluster is anchored on its lowest-index item; an item joins the first
    anchor it resembles, so clustering is independent of dictionary order.
    """
    clusters: list[list[ClassifiedLineItem]] = []
    for item in items:
        if not item.normalized_description:
            continue
        for cluster in clusters:
            anchor = cluster[0]
            if anchor.unit_price != item.unit_price:
                continue
            if description_similarity(anchor.normalized_description, item.normalized_description) >= threshold:
                cluster.append(item)
                break
        else:
            clusters.append([item])
    return [cluster for cluster in clusters if len(cluster) > 1]


def check_duplicates(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Repeated lines on the same estimate, flagged rather than merged."""
    findings: list[Finding] = []
    originals, supplements = _side_items(result)
    for side, items in ((ItemSide.ORIGINAL, originals), (ItemSide.SUPPLEMENT, supplements)):
        for cluster in _duplicate_clusters(items, config.duplicate_similarity):
            anchor = cluster[0]
            identical = all(item.normalized_description == anchor.normalized_description for item in cluster)
            extra_total = sum((item.line_total for item in cluster[1:]), Decimal("0"))
            findings.append(
                Finding(
                    type=DiscrepancyType.DUPLICATE_ITEM,
                    description=(
                        f"'{anchor.description}' at ${anchor.unit_price} appears {len(cluster)} times "
                        f"on the {side.value}"
                    ),
                    affected_item_ids=tuple(item.item_id for item in cluster),
                    estimated_impact=quantize_money(abs(extra_total), config.money_quantum),
                    confidence=DUPLICATE_EXACT_CONFIDENCE if identical else DUPLICATE_NEAR_CONFIDENCE,
                    recommended_action=(
                        "Confirm whether the operation was performed more than once; "
                        "remove the repeated line if not"
                    ),
                )
            )
    return findings


def check_round_number_bias(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Share of new or re-priced supplement lines with round unit prices."""
    sample: list[tuple[ClassifiedLineItem, Decimal]] = []
    for pair in result.matched:
        if pair.supplement.unit_price != pair.original.unit_price:
            sample.append((pair.supplement, pair.supplement.line_total - pair.original.line_total))
    for residual in result.new_supplement:
        sample.append((residual.item, residual.item.line_total))

    if len(sample) < ROUND_NUMBER_MIN_SAMPLE:
        return []

    sample.sort(key=lambda entry: entry[0].index)
    rounded = [(item, delta) for item, delta in sample if _is_round_price(item.unit_price)]
    rate = len(rounded) / len(sample)
    logger.debug(
        "round_number_check | sample=%s | round=%s | rate=%.2f | threshold=%.2f",
        len(sample),
        len(rounded),
        rate,
        config.round_number_rate_threshold,
    )
    if len(rounded) < ROUND_NUMBER_MIN_COUNT or rate <= config.round_number_rate_threshold:
        return []

    impact = sum((delta for _, delta in rounded if delta > 0), Decimal("0"))
    confidence = min(0.9, 0.5 + (rate - config.round_number_rate_threshold))
    return [
        Finding(
            type=DiscrepancyType.SUSPICIOUS_PRICING,
            description=(
                f"{len(rounded)} of {len(sample)} new or re-priced supplement lines ({rate:.0%}) "
                f"use round unit prices, above the {config.round_number_rate_threshold:.0%} baseline"
            ),
            affected_item_ids=tuple(item.item_id for item, _ in rounded),
            estimated_impact=quantize_money(impact, config.money_quantum),
            confidence=round(confidence, 4),
            recommended_action="Request itemized invoices or price sources for the round-priced lines",
        )
    ]


def check_markup(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Unit-price increases above the markup threshold and the category norm."""
    by_category: dict[CostCategory, list[Decimal]] = {}
    for pair in result.matched:
        if pair.variance is not None and pair.variance.unit_price_pct is not None:
            by_category.setdefault(pair.category, []).append(pair.variance.unit_price_pct)

    findings: list[Finding] = []
    for pair in result.matched:
        variance = pair.variance
        if variance is None or variance.unit_price_pct is None:
            continue
        pct = variance.unit_price_pct
        # Credits growing in magnitude also give a positive percentage.
        if variance.unit_price_delta <= 0 or pct <= config.markup_threshold_pct:
            continue

        distribution = sorted(by_category.get(pair.category, []))
        if len(distribution) >= MARKUP_MIN_DISTRIBUTION:
            category_median = median(distribution)
            if pct <= category_median * MARKUP_MEDIAN_MULTIPLE:
                continue
            context = f"category median is {category_median}%"
            confidence = MARKUP_DISTRIBUTION_CONFIDENCE
        else:
            context = f"above the {config.markup_threshold_pct}% markup threshold"
            confidence = MARKUP_THRESHOLD_CONFIDENCE

        findings.append(
            Finding(
                type=DiscrepancyType.SUSPICIOUS_PRICING,
                description=(
                    f"Unit price for '{pair.supplement.description}' rose {pct}% "
                    f"(${pair.original.unit_price} -> ${pair.supplement.unit_price}); {context}"
                ),
                affected_item_ids=(pair.original.item_id, pair.supplement.item_id),
                estimated_impact=quantize_money(max(variance.total_delta, Decimal("0")), config.money_quantum),
                confidence=confidence,
                recommended_action="Compare the new unit price against published or prevailing rates",
            )
        )
    return findings


def check_missing_coverage(
    result: ReconciliationResult,
    statistics: VarianceStatistics,
    config: ComparisonConfig,
) -> list[Finding]:
    """Categories that vanish from the supplement without removed-item records."""
    findings: list[Finding] = []
    removed_ids = {residual.item.item_id for residual in result.unmatched_original}
    originals, _ = _side_items(result)

    for subtotal in statistics.category_subtotals:
        if subtotal.original_total <= config.missing_item_min_amount or subtotal.supplement_total != 0:
            continue
        removed_total = sum(
            (residual.item.line_total for residual in result.unmatched_original if residual.category == subtotal.category),
            Decimal("0"),
        )
        unexplained = subtotal.original_total - removed_total
        if unexplained <= config.missing_item_min_amount:
            continue
        affected = tuple(
            item.item_id
            for item in originals
            if item.category == subtotal.category and item.item_id not in removed_ids
        )
        findings.append(
            Finding(
                type=DiscrepancyType.MISSING_ITEM,
                description=(
                    f"{subtotal.category.value.title()} billed ${subtotal.original_total} on the original "
                    f"but nothing on the supplement; ${quantize_money(unexplained, config.money_quantum)} "
                    f"is not accounted for by removed lines"
                ),
                affected_item_ids=affected,
                estimated_impact=quantize_money(unexplained, config.money_quantum),
                confidence=MISSING_COVERAGE_CONFIDENCE,
                recommended_action="Check whether these lines were re-categorized, merged or dropped in error",
            )
        )
    return findings


def check_data_inconsistency(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    findings: list[Finding] = []
    originals, supplements = _side_items(result)
    for item in originals + supplements:
        if item.is_complete:
            continue
        findings.append(
            Finding(
                type=DiscrepancyType.DATA_INCONSISTENCY,
                description=(
                    f"{item.side.value.title()} line {item.index + 1} ('{item.description or 'no description'}') "
                    f"had substituted fields: {', '.join(item.raw.missing_fields)}"
                ),
                affected_item_ids=(item.item_id,),
                estimated_impact=quantize_money(abs(item.line_total), config.money_quantum),
                confidence=INCOMPLETE_ITEM_CONFIDENCE,
                recommended_action="Verify the extracted values against the source document",
            )
        )

    for pair in result.matched:
        if pair.original.category == pair.supplement.category:
            continue
        delta = pair.variance.total_delta if pair.variance is not None else Decimal("0")
        findings.append(
            Finding(
                type=DiscrepancyType.DATA_INCONSISTENCY,
                description=(
                    f"'{pair.original.description}' moved from {pair.original.category.value} "
                    f"to {pair.supplement.category.value} between versions"
                ),
                affected_item_ids=(pair.original.item_id, pair.supplement.item_id),
                estimated_impact=quantize_money(abs(delta), config.money_quantum),
                confidence=CATEGORY_CHANGE_CONFIDENCE,
                recommended_action="Confirm the pairing and the intended cost category",
            )
        )
    return findings


def _mean_and_std(values: Sequence[Decimal]) -> tuple[Decimal, Decimal]:
    """Population mean and standard deviation, summed in sorted order."""
    with localcontext() as ctx:
        ctx.prec = 34
        mean = sum(sorted(values), Decimal("0")) / len(values)
        variance = sum(sorted((value - mean) ** 2 for value in values), Decimal("0")) / len(values)
        return +mean, variance.sqrt()


def check_statistical_outliers(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Supplement lines far from the supplement's own price distribution.

    Unit prices and line totals are scored; quantities mix hours and units
    and are not compared. One finding covers every flagged line.
    """
    _, supplements = _side_items(result)
    sample = [item for item in supplements if item.is_complete]
    if len(sample) < OUTLIER_MIN_ITEMS:
        return []

    threshold = Decimal(str(config.outlier_z_threshold))
    flagged: dict[str, tuple[ClassifiedLineItem, Decimal, list[str]]] = {}
    for attribute, label in OUTLIER_METRICS:
        values = [getattr(item, attribute) for item in sample]
        mean, std = _mean_and_std(values)
        if std == 0:
            continue
        for item, value in zip(sample, values):
            z_score = abs(value - mean) / std
            if z_score < threshold:
                continue
            _, best, labels = flagged.get(item.item_id, (item, Decimal("0"), []))
            flagged[item.item_id] = (item, max(best, z_score), labels + [label])

    if not flagged:
        return []

    mean_total, _ = _mean_and_std([item.line_total for item in sample])
    outliers = sorted(flagged.values(), key=lambda entry: entry[0].index)
    max_z = max(z_score for _, z_score, _ in outliers)
    impact = sum((max(item.line_total - mean_total, Decimal("0")) for item, _, _ in outliers), Decimal("0"))
    details = ", ".join(f"'{item.description}' ({' and '.join(labels)}, z={z_score:.2f})" for item, z_score, labels in outliers)
    logger.debug("outlier_check | sample=%s | flagged=%s | max_z=%.2f", len(sample), len(outliers), max_z)
    return [
        Finding(
            type=DiscrepancyType.SUSPICIOUS_PRICING,
            description=f"Supplement lines far outside the supplement's price distribution: {details}",
            affected_item_ids=tuple(item.item_id for item, _, _ in outliers),
            estimated_impact=quantize_money(impact, config.money_quantum),
            confidence=round(min(float(max_z) / OUTLIER_FULL_CONFIDENCE_Z, 1.0), 4),
            recommended_action="Verify the outlying lines against the repair scope and parts invoices",
        )
    ]


def _leading_digit(value: Decimal) -> int:
    return next(digit for digit in value.as_tuple().digits if digit)


def check_benford_digits(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Chi-square test of supplement line-total leading digits against Benford's law."""
    _, supplements = _side_items(result)
    sample = [item for item in supplements if item.line_total > 0]
    if len(sample) < config.benford_min_items:
        return []

    size = len(sample)
    counts = [0] * 9
    for item in sample:
        counts[_leading_digit(item.line_total) - 1] += 1
    chi_square = sum(
        (count - size * expected) ** 2 / (size * expected) for count, expected in zip(counts, BENFORD_EXPECTED)
    )
    logger.debug("benford_check | sample=%s | chi_square=%.3f", size, chi_square)

    confidence = next((level for critical, level in BENFORD_CRITICAL if chi_square > critical), None)
    if confidence is None:
        return []

    excess_digits = [
        digit
        for digit, (count, expected) in enumerate(zip(counts, BENFORD_EXPECTED), start=1)
        if count / size - expected > BENFORD_DIGIT_EXCESS
    ]
    affected = [item for item in sample if _leading_digit(item.line_total) in excess_digits]
    impact = sum((item.line_total for item in affected), Decimal("0"))
    return [
        Finding(
            type=DiscrepancyType.SUSPICIOUS_PRICING,
            description=(
                f"Leading digits of {size} supplement line totals depart from Benford's law "
                f"(chi-square {chi_square:.1f}); over-represented digit(s): "
                f"{', '.join(str(digit) for digit in excess_digits) or 'none'}"
            ),
            affected_item_ids=tuple(item.item_id for item in affected),
            estimated_impact=quantize_money(impact, config.money_quantum),
            confidence=confidence,
            recommended_action="Check whether the amounts were estimated or typed rather than priced from sources",
        )
    ]


def check_excessive_labor(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """Hourly labor lines billing more hours than their vehicle system warrants."""
    if not config.enable_automotive_checks:
        return []
    findings: list[Finding] = []
    _, supplements = _side_items(result)
    for item in supplements:
        if item.matched_rule != LABOR_HOURS_RULE or not item.is_complete:
            continue
        limit = Decimal(str(max_labor_hours(item.normalized_description)))
        if item.quantity <= limit:
            continue
        excess = (item.quantity - limit) * item.unit_price
        findings.append(
            Finding(
                type=DiscrepancyType.SUSPICIOUS_PRICING,
                description=(
                    f"'{item.description}' bills {item.quantity} hours; "
                    f"{limit} is the usual ceiling for this kind of repair"
                ),
                affected_item_ids=(item.item_id,),
                estimated_impact=quantize_money(max(excess, Decimal("0")), config.money_quantum),
                confidence=EXCESSIVE_LABOR_CONFIDENCE,
                recommended_action="Compare the billed hours with a published labor time guide",
            )
        )
    return findings


def check_part_switch(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """OEM parts on the original that became aftermarket without a lower price."""
    if not config.enable_automotive_checks:
        return []
    findings: list[Finding] = []
    for pair in result.matched:
        if part_origin(pair.original.normalized_description) != "oem":
            continue
        if part_origin(pair.supplement.normalized_description) != "aftermarket":
            continue
        if pair.supplement.unit_price < pair.original.unit_price:
            continue
        findings.append(
            Finding(
                type=DiscrepancyType.SUSPICIOUS_PRICING,
                description=(
                    f"'{pair.original.description}' became '{pair.supplement.description}' "
                    f"but is still billed at ${pair.supplement.unit_price} (OEM ${pair.original.unit_price})"
                ),
                affected_item_ids=(pair.original.item_id, pair.supplement.item_id),
                estimated_impact=quantize_money(abs(pair.supplement.line_total), config.money_quantum),
                confidence=PART_SWITCH_CONFIDENCE,
                recommended_action="Confirm which part was installed and reprice aftermarket parts accordingly",
            )
        )
    return findings


def check_rarely_damaged_parts(
    result: ReconciliationResult,
    config: ComparisonConfig,
) -> list[Finding]:
    """New supplement lines for components collisions rarely reach."""
    if not config.enable_automotive_checks:
        return []
    findings: list[Finding] = []
    for residual in result.new_supplement:
        item = residual.item
        if not is_rarely_damaged(item.normalized_description):
            continue
        findings.append(
            Finding(
                type=DiscrepancyType.SUSPICIOUS_PRICING,
                description=f"Supplement adds '{item.description}', a part rarely damaged in a collision",
                affected_item_ids=(item.item_id,),
                estimated_impact=quantize_money(abs(item.line_total), config.money_quantum),
                confidence=RARELY_DAMAGED_CONFIDENCE,
                recommended_action="Request diagnostic evidence or photos linking the part to the loss",
            )
        )
    return findings


def detect_discrepancies(
    result: ReconciliationResult,
    statistics: VarianceStatistics,
    config: ComparisonConfig | None = None,
) -> list[Discrepancy]:
    """Run every check and return discrepancies sorted by severity then impact."""
    config = config or ComparisonConfig()
    checks: list[tuple[str, Callable[[], list[Finding]]]] = [
        ("calculation", lambda: check_calculation_errors(result, config)),
        ("duplicates", lambda: check_duplicates(result, config)),
        ("round_numbers", lambda: check_round_number_bias(result, config)),
        ("markup", lambda: check_markup(result, config)),
        ("missing_coverage", lambda: check_missing_coverage(result, statistics, config)),
        ("data_inconsistency", lambda: check_data_inconsistency(result, config)),
        ("outliers", lambda: check_statistical_outliers(result, config)),
        ("benford", lambda: check_benford_digits(result, config)),
        ("excessive_labor", lambda: check_excessive_labor(result, config)),
        ("part_switch", lambda: check_part_switch(result, config)),
        ("rarely_damaged", lambda: check_rarely_damaged_parts(result, config)),
    ]

    findings: list[Finding] = []
    for name, check in checks:
        found = check()
        logger.debug("discrepancy_check | check=%s | findings=%s", name, len(found))
        findings.extend(found)

    scored = [(finding, severity_for(finding.estimated_impact, finding.confidence)) for finding in findings]
    scored.sort(
        key=lambda entry: (
            -entry[1].rank,
            -entry[0].estimated_impact,
            entry[0].type.value,
            entry[0].affected_item_ids,
        )
    )

    discrepancies = [
        Discrepancy(
            discrepancy_id=f"DSC-{position:03d}",
            type=finding.type,
            severity=severity,
            description=finding.description,
            affected_item_ids=finding.affected_item_ids,
            estimated_impact=finding.estimated_impact,
            confidence=finding.confidence,
            recommended_action=finding.recommended_action,
        )
        for position, (finding, severity) in enumerate(scored, start=1)
    ]

    by_type: dict[str, int] = {}
    for discrepancy in discrepancies:
        by_type[discrepancy.type.value] = by_type.get(discrepancy.type.value, 0) + 1
    logger.info(
        "discrepancy_complete | total=%s | by_type=%s",
        len(discrepancies),
        dict(sorted(by_type.items())),
    )
    return discrepancies
