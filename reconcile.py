"""
reconcile.py - Multi-stage line-item reconciliation.

Pairs original-estimate items with supplement items that describe the same
repair operation. Stages run in a fixed order and each only sees items no
earlier stage consumed:

1. exact     identical normalized description and identical category
2. fuzzy     RapidFuzz description similarity above the configured threshold,
             ranked by a composite of similarity, category and price signals
3. fallback  same category, same quantity, unit price within tolerance

Whatever is left becomes a residual: `removed` for originals, `new` for
supplement items. Every stage builds an explicit candidate list and
consumes it greedily in a fully specified sort order, so identical input
always yields identical pairs.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from rapidfuzz import fuzz

from config import ComparisonConfig
from errors import ReconciliationError
from logging_config import get_logger
from models import (
    ClassifiedLineItem,
    MatchedItemPair,
    MatchSignals,
    MatchStage,
    ReconciliationResult,
    ResidualItem,
    ResidualKind,
)

logger = get_logger(__name__)

DESCRIPTION_WEIGHT = 0.70
CATEGORY_WEIGHT = 0.20
PRICE_WEIGHT = 0.10

# Price proximity reaches zero when the two prices differ by half their mean.
PRICE_PROXIMITY_SPAN = Decimal("0.5")


@dataclass(frozen=True)
class _Candidate:
    """One scored (original, supplement) pairing awaiting greedy assignment."""

    sort_key: tuple
    original_pos: int
    supplement_pos: int
    signals: MatchSignals


def description_similarity(left: str, right: str) -> float:
    """Similarity of two normalized descriptions in [0, 1].

    Takes the better of the plain edit-distance ratio and the token-sort
    ratio, so reordered words ("Bumper Cover Front" vs "Front Bumper Cover")
    score as highly as small spelling changes.
    """
    if not left and not right:
        return 0.0
    if left == right:
        return 1.0
    score = max(fuzz.ratio(left, right), fuzz.token_sort_ratio(left, right))
    return round(max(0.0, min(100.0, float(score))) / 100.0, 4)


def price_proximity(original_price: Decimal, supplement_price: Decimal) -> float:
    """1.0 for identical unit prices, falling linearly to 0.0."""
    if original_price == supplement_price:
        return 1.0
    mean = (abs(original_price) + abs(supplement_price)) / 2
    if mean == 0:
        return 1.0
    diff = abs(original_price - supplement_price)
    value = Decimal(1) - diff / (mean * PRICE_PROXIMITY_SPAN)
    return round(float(max(Decimal(0), min(Decimal(1), value))), 4)


def match_signals(original: ClassifiedLineItem, supplement: ClassifiedLineItem) -> MatchSignals:
    """Score one candidate pair on description, category and price."""
    similarity = description_similarity(original.normalized_description, supplement.normalized_description)
    same_category = original.category == supplement.category
    proximity = price_proximity(original.unit_price, supplement.unit_price)
    composite = (
        similarity * DESCRIPTION_WEIGHT
        + (1.0 if same_category else 0.0) * CATEGORY_WEIGHT
        + proximity * PRICE_WEIGHT
    )
    return MatchSignals(
        description_similarity=similarity,
        category_match=same_category,
        price_proximity=proximity,
        composite=round(max(0.0, min(1.0, composite)), 4),
    )


class _Pool:
    """Tracks which positions on each side are still available."""

    def __init__(self, originals: Sequence[ClassifiedLineItem], supplements: Sequence[ClassifiedLineItem]) -> None:
        self.originals = list(originals)
        self.supplements = list(supplements)
        self.free_original = [True] * len(self.originals)
        self.free_supplement = [True] * len(self.supplements)
        self.pairs: list[MatchedItemPair] = []

    def open_originals(self) -> list[int]:
        return [pos for pos, free in enumerate(self.free_original) if free]

    def open_supplements(self) -> list[int]:
        return [pos for pos, free in enumerate(self.free_supplement) if free]

    def consume(self, candidates: Iterable[_Candidate], stage: MatchStage) -> int:
        """Greedily accept candidates in sort order; each item is used at most once."""
        added = 0
        for candidate in sorted(candidates, key=lambda item: item.sort_key):
            if not (self.free_original[candidate.original_pos] and self.free_supplement[candidate.supplement_pos]):
                continue
            self.free_original[candidate.original_pos] = False
            self.free_supplement[candidate.supplement_pos] = False
            score = 1.0 if stage is MatchStage.EXACT else candidate.signals.composite
            self.pairs.append(
                MatchedItemPair(
                    original=self.originals[candidate.original_pos],
                    supplement=self.supplements[candidate.supplement_pos],
                    stage=stage,
                    score=score,
                    signals=candidate.signals,
                )
            )
            added += 1
        return added


def _exact_candidates(pool: _Pool) -> list[_Candidate]:
    by_key: dict[tuple[str, str], list[int]] = {}
    for pos in pool.open_supplements():
        item = pool.supplements[pos]
        if not item.normalized_description:
            continue
        by_key.setdefault((item.normalized_description, item.category.value), []).append(pos)

    candidates: list[_Candidate] = []
    for o_pos in pool.open_originals():
        original = pool.originals[o_pos]
        if not original.normalized_description:
            continue
        for s_pos in by_key.get((original.normalized_description, original.category.value), []):
            supplement = pool.supplements[s_pos]
            total_gap = abs(supplement.line_total - original.line_total)
            candidates.append(
                _Candidate(
                    sort_key=(total_gap, o_pos, s_pos),
                    original_pos=o_pos,
                    supplement_pos=s_pos,
                    signals=MatchSignals(
                        description_similarity=1.0,
                        category_match=True,
                        price_proximity=price_proximity(original.unit_price, supplement.unit_price),
                        composite=1.0,
                    ),
                )
            )
    return candidates


def _fuzzy_candidates(pool: _Pool, config: ComparisonConfig) -> list[_Candidate]:
    candidates: list[_Candidate] = []
    open_supplements = pool.open_supplements()
    for o_pos in pool.open_originals():
        original = pool.originals[o_pos]
        for s_pos in open_supplements:
            supplement = pool.supplements[s_pos]
            if not config.allow_cross_category_fuzzy and original.category != supplement.category:
                continue
            signals = match_signals(original, supplement)
            if signals.description_similarity < config.fuzzy_threshold:
                continue
            candidates.append(
                _Candidate(
                    sort_key=(-signals.composite, -signals.description_similarity, o_pos, s_pos),
                    original_pos=o_pos,
                    supplement_pos=s_pos,
                    signals=signals,
                )
            )
    return candidates


def _within_price_tolerance(original_price: Decimal, supplement_price: Decimal, tolerance: float) -> bool:
    if original_price == 0:
        return supplement_price == 0
    relative = abs(supplement_price - original_price) / abs(original_price)
    return relative <= Decimal(str(tolerance))


def _fallback_candidates(pool: _Pool, config: ComparisonConfig) -> list[_Candidate]:
    candidates: list[_Candidate] = []
    open_supplements = pool.open_supplements()
    for o_pos in pool.open_originals():
        original = pool.originals[o_pos]
        for s_pos in open_supplements:
            supplement = pool.supplements[s_pos]
            if original.category != supplement.category:
                continue
            if original.quantity != supplement.quantity:
                continue
            if not _within_price_tolerance(original.unit_price, supplement.unit_price, config.fallback_price_tolerance):
                continue
            signals = match_signals(original, supplement)
            if signals.description_similarity < config.fallback_min_similarity:
                continue
            price_gap = abs(supplement.unit_price - original.unit_price)
            candidates.append(
                _Candidate(
                    sort_key=(-signals.description_similarity, price_gap, o_pos, s_pos),
                    original_pos=o_pos,
                    supplement_pos=s_pos,
                    signals=signals,
                )
            )
    return candidates


def _verify_partition(
    originals: Sequence[ClassifiedLineItem],
    supplements: Sequence[ClassifiedLineItem],
    result: ReconciliationResult,
) -> None:
    """Raise ReconciliationError unless every item sits in exactly one partition."""
    original_ids = [pair.original.item_id for pair in result.matched]
    original_ids += [residual.item.item_id for residual in result.unmatched_original]
    supplement_ids = [pair.supplement.item_id for pair in result.matched]
    supplement_ids += [residual.item.item_id for residual in result.new_supplement]

    problems: list[str] = []
    if len(original_ids) != len(set(original_ids)):
        problems.append("an original item appears in more than one partition")
    if len(supplement_ids) != len(set(supplement_ids)):
        problems.append("a supplement item appears in more than one partition")
    if sorted(original_ids) != sorted(item.item_id for item in originals):
        problems.append("original partitions do not cover the original items")
    if sorted(supplement_ids) != sorted(item.item_id for item in supplements):
        problems.append("supplement partitions do not cover the supplement items")

    if problems:
        logger.error(
            "reconcile_invariant_error | problems=%s | original_count=%s | supplement_count=%s",
            problems,
            len(originals),
            len(supplements),
        )
        raise ReconciliationError(
            "; ".join(problems),
            original_count=len(originals),
            supplement_count=len(supplements),
        )


def reconcile(
    originals: Sequence[ClassifiedLineItem],
    supplements: Sequence[ClassifiedLineItem],
    config: ComparisonConfig | None = None,
) -> ReconciliationResult:
    """Match original items to supplement items and collect residuals."""
    config = config or ComparisonConfig()
    pool = _Pool(originals, supplements)
    stage_counts = {stage.value: 0 for stage in MatchStage}

    if not pool.originals or not pool.supplements:
        logger.info(
            "reconcile_input | original_count=%s | supplement_count=%s | note='empty side, all residual'",
            len(pool.originals),
            len(pool.supplements),
        )

    stage_counts[MatchStage.EXACT.value] = pool.consume(_exact_candidates(pool), MatchStage.EXACT)

    if config.enable_fuzzy_matching:
        fuzzy = _fuzzy_candidates(pool, config)
        stage_counts[MatchStage.FUZZY.value] = pool.consume(fuzzy, MatchStage.FUZZY)
        logger.debug(
            "reconcile_fuzzy | candidates=%s | accepted=%s | threshold=%.2f",
            len(fuzzy),
            stage_counts[MatchStage.FUZZY.value],
            config.fuzzy_threshold,
        )

    if config.enable_fallback_matching:
        stage_counts[MatchStage.FALLBACK.value] = pool.consume(_fallback_candidates(pool, config), MatchStage.FALLBACK)

    matched = sorted(pool.pairs, key=lambda pair: (pair.original.index, pair.supplement.index))
    removed = [
        ResidualItem(item=pool.originals[pos], kind=ResidualKind.REMOVED) for pos in pool.open_originals()
    ]
    new = [
        ResidualItem(item=pool.supplements[pos], kind=ResidualKind.NEW) for pos in pool.open_supplements()
    ]

    result = ReconciliationResult(
        matched=tuple(matched),
        unmatched_original=tuple(removed),
        new_supplement=tuple(new),
        stage_counts=stage_counts,
    )
    _verify_partition(pool.originals, pool.supplements, result)

    logger.info(
        "reconcile_complete | matched=%s | exact=%s | fuzzy=%s | fallback=%s | removed=%s | new=%s | match_rate=%.2f",
        len(matched),
        stage_counts[MatchStage.EXACT.value],
        stage_counts[MatchStage.FUZZY.value],
        stage_counts[MatchStage.FALLBACK.value],
        len(removed),
        len(new),
        result.match_rate,
    )
    return result
