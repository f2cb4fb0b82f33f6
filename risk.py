"""
risk.py - Composite risk score for one comparison.

    score = 100 * (0.5 * variance magnitude
                   + 0.3 * discrepancy severity
                   + 0.2 * suspicious-pattern confidence)

Each component is normalized to [0, 1] before weighting. The level comes
from fixed cut points on the score.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from logging_config import get_logger
from models import (
    Discrepancy,
    DiscrepancyType,
    ReconciliationResult,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    VarianceStatistics,
)

logger = get_logger(__name__)

VARIANCE_WEIGHT = 0.5
DISCREPANCY_WEIGHT = 0.3
SUSPICIOUS_WEIGHT = 0.2

# Severity points at which the discrepancy component saturates.
DISCREPANCY_SATURATION = 20
# Summed detection confidence at which the suspicious component saturates.
SUSPICIOUS_SATURATION = 3.0

LEVEL_CUTOFFS: tuple[tuple[float, RiskLevel], ...] = (
    (10.0, RiskLevel.MINIMAL),
    (25.0, RiskLevel.LOW),
    (50.0, RiskLevel.MODERATE),
    (75.0, RiskLevel.HIGH),
)

LEVEL_GUIDANCE: dict[RiskLevel, str] = {
    RiskLevel.MINIMAL: "Minimal risk: supplement is consistent with the original estimate; standard approval applies",
    RiskLevel.LOW: "Low risk: spot-check the significant changes before approval",
    RiskLevel.MODERATE: "Moderate risk: review every significant change and discrepancy before approval",
    RiskLevel.HIGH: "High risk: detailed line-by-line review recommended before approval",
    RiskLevel.CRITICAL: "Critical risk: escalate for independent review; do not approve as submitted",
}

SUSPICIOUS_TYPES = {DiscrepancyType.SUSPICIOUS_PRICING, DiscrepancyType.DUPLICATE_ITEM}


def risk_level(score: float) -> RiskLevel:
    for cutoff, level in LEVEL_CUTOFFS:
        if score < cutoff:
            return level
    return RiskLevel.CRITICAL


def variance_magnitude(result: ReconciliationResult, statistics: VarianceStatistics) -> float:
    """Sum of absolute per-item variance over the larger estimate total, capped at 1."""
    absolute = Decimal("0")
    records = [pair.variance for pair in result.matched]
    records += [residual.variance for residual in result.unmatched_original + result.new_supplement]
    for record in records:
        if record is not None:
            absolute += abs(record.total_delta)

    grand = statistics.grand_total
    base = max(abs(grand.original_total), abs(grand.supplement_total))
    if base == 0:
        return 0.0
    return min(1.0, float(absolute / base))


def discrepancy_severity(discrepancies: Sequence[Discrepancy]) -> float:
    points = sum(discrepancy.severity.weight for discrepancy in discrepancies)
    return min(1.0, points / DISCREPANCY_SATURATION)


def suspicious_patterns(discrepancies: Sequence[Discrepancy]) -> float:
    confidence = sum(d.confidence for d in discrepancies if d.type in SUSPICIOUS_TYPES)
    return min(1.0, confidence / SUSPICIOUS_SATURATION)


def _factor_recommendation(
    factor: RiskFactor,
    statistics: VarianceStatistics,
    discrepancies: Sequence[Discrepancy],
) -> str:
    if factor.name == "variance_magnitude":
        grand = statistics.grand_total
        return (
            f"Review the {grand.significant_count} significant line change(s); "
            f"net change is ${grand.net_change} against an original of ${grand.original_total}"
        )
    if factor.name == "discrepancy_severity":
        worst = discrepancies[0]
        return (
            f"Resolve {len(discrepancies)} discrepancy(ies), starting with {worst.discrepancy_id} "
            f"({worst.severity.value} {worst.type.value.replace('_', ' ')})"
        )
    suspicious = [d for d in discrepancies if d.type in SUSPICIOUS_TYPES]
    return (
        f"Investigate {len(suspicious)} suspicious pricing or duplicate finding(s) "
        "before accepting the supplement"
    )


def assess_risk(
    result: ReconciliationResult,
    statistics: VarianceStatistics,
    discrepancies: Sequence[Discrepancy],
) -> RiskAssessment:
    """Score the comparison and derive ranked recommendations."""
    components = (
        (
            "variance_magnitude",
            VARIANCE_WEIGHT,
            variance_magnitude(result, statistics),
            "Absolute line-level change relative to the larger estimate total",
        ),
        (
            "discrepancy_severity",
            DISCREPANCY_WEIGHT,
            discrepancy_severity(discrepancies),
            f"Severity-weighted count of {len(discrepancies)} discrepancy(ies)",
        ),
        (
            "suspicious_patterns",
            SUSPICIOUS_WEIGHT,
            suspicious_patterns(discrepancies),
            "Detection confidence of suspicious pricing and duplicate findings",
        ),
    )

    factors: list[RiskFactor] = []
    raw_score = 0.0
    for name, weight, value, description in components:
        contribution = 100.0 * weight * value
        raw_score += contribution
        factors.append(
            RiskFactor(
                name=name,
                weight=weight,
                value=round(value, 4),
                contribution=round(contribution, 2),
                description=description,
            )
        )

    score = round(min(100.0, max(0.0, raw_score)), 1)
    level = risk_level(score)

    recommendations = [LEVEL_GUIDANCE[level]]
    ranked = sorted(factors, key=lambda factor: (-factor.contribution, factor.name))
    for factor in ranked:
        if factor.contribution > 0:
            recommendations.append(_factor_recommendation(factor, statistics, discrepancies))
    if statistics.data_quality.score < 0.7:
        recommendations.append(
            f"Data quality is {statistics.data_quality.score:.0%}; verify extracted line items before relying on totals"
        )

    assessment = RiskAssessment(
        score=score,
        level=level,
        factors=tuple(ranked),
        recommendations=tuple(recommendations),
    )
    logger.info(
        "risk_complete | score=%.1f | level=%s | factors=%s",
        score,
        level.value,
        {factor.name: factor.contribution for factor in ranked},
    )
    return assessment
