"""
variance.py - Per-item variance computation and significance tiers.

Attaches a VarianceRecord to every matched pair and every residual item.

Conventions:
- deltas are supplement minus original, exact Decimal subtraction
- percentages are in percent, rounded half-up to 2 places, and are None
  whenever the baseline is zero (never a division error, never "100%")
- residuals have a zero baseline: removed items contribute -total,
  new items +total
- the significance tier is the higher of the percentage tier and the
  absolute-amount tier, so a small percentage on a large amount still counts
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from config import ComparisonConfig
from logging_config import get_logger
from models import (
    ChangeType,
    ClassifiedLineItem,
    MatchedItemPair,
    ReconciliationResult,
    ResidualItem,
    ResidualKind,
    SignificanceTier,
    VarianceRecord,
)

logger = get_logger(__name__)

PERCENT_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")


def percent_change(delta: Decimal, baseline: Decimal) -> Optional[Decimal]:
    """delta / baseline in percent, or None when the baseline is zero."""
    if baseline == 0:
        return None
    return (delta / baseline * 100).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def _tier_index(value: Decimal, thresholds: tuple[Decimal, ...]) -> int:
    return sum(1 for threshold in thresholds if value >= threshold)


def significance_tier(
    total_delta: Decimal,
    total_pct: Optional[Decimal],
    config: ComparisonConfig,
) -> SignificanceTier:
    """Tier from whichever of the percentage or absolute thresholds is higher."""
    if total_delta == 0:
        return SignificanceTier.NEGLIGIBLE
    abs_rank = _tier_index(abs(total_delta), config.significance_abs_thresholds)
    pct_rank = _tier_index(abs(total_pct), config.significance_pct_thresholds) if total_pct is not None else 0
    return SignificanceTier.from_rank(max(abs_rank, pct_rank))


def _change_type(total_delta: Decimal) -> ChangeType:
    if total_delta > 0:
        return ChangeType.INCREASE
    if total_delta < 0:
        return ChangeType.DECREASE
    return ChangeType.UNCHANGED


def pair_variance(
    original: ClassifiedLineItem,
    supplement: ClassifiedLineItem,
    config: ComparisonConfig | None = None,
) -> VarianceRecord:
    """Variance for a matched pair."""
    config = config or ComparisonConfig()
    quantity_delta = supplement.quantity - original.quantity
    price_delta = supplement.unit_price - original.unit_price
    total_delta = supplement.line_total - original.line_total
    total_pct = percent_change(total_delta, original.line_total)
    tier = significance_tier(total_delta, total_pct, config)

    return VarianceRecord(
        quantity_delta=quantity_delta,
        unit_price_delta=price_delta,
        total_delta=total_delta,
        baseline_quantity=original.quantity,
        baseline_unit_price=original.unit_price,
        baseline_total=original.line_total,
        quantity_pct=percent_change(quantity_delta, original.quantity),
        unit_price_pct=percent_change(price_delta, original.unit_price),
        total_pct=total_pct,
        change_type=_change_type(total_delta),
        significance=tier,
        is_significant=tier.rank >= config.significant_tier.rank,
    )


def residual_variance(residual: ResidualItem, config: ComparisonConfig | None = None) -> VarianceRecord:
    """Variance for an item present on only one side."""
    config = config or ComparisonConfig()
    item = residual.item
    sign = Decimal(-1) if residual.kind is ResidualKind.REMOVED else Decimal(1)
    total_delta = sign * item.line_total
    tier = significance_tier(total_delta, None, config)

    return VarianceRecord(
        quantity_delta=sign * item.quantity,
        unit_price_delta=sign * item.unit_price,
        total_delta=total_delta,
        baseline_quantity=ZERO,
        baseline_unit_price=ZERO,
        baseline_total=ZERO,
        quantity_pct=None,
        unit_price_pct=None,
        total_pct=None,
        change_type=ChangeType.REMOVED if residual.kind is ResidualKind.REMOVED else ChangeType.NEW,
        significance=tier,
        is_significant=tier.rank >= config.significant_tier.rank,
    )


def annotate_variances(
    result: ReconciliationResult,
    config: ComparisonConfig | None = None,
) -> ReconciliationResult:
    """Return a copy of the reconciliation with a VarianceRecord on every item."""
    config = config or ComparisonConfig()

    matched: list[MatchedItemPair] = [
        pair.model_copy(update={"variance": pair_variance(pair.original, pair.supplement, config)})
        for pair in result.matched
    ]
    removed = [
        residual.model_copy(update={"variance": residual_variance(residual, config)})
        for residual in result.unmatched_original
    ]
    new = [
        residual.model_copy(update={"variance": residual_variance(residual, config)})
        for residual in result.new_supplement
    ]

    significant = sum(
        1
        for record in [pair.variance for pair in matched] + [residual.variance for residual in removed + new]
        if record is not None and record.is_significant
    )
    logger.info(
        "variance_complete | matched=%s | removed=%s | new=%s | significant=%s",
        len(matched),
        len(removed),
        len(new),
        significant,
    )
    return result.model_copy(
        update={
            "matched": tuple(matched),
            "unmatched_original": tuple(removed),
            "new_supplement": tuple(new),
        }
    )
