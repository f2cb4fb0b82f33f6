"""
analyze.py - End-to-end comparison of an original estimate and a supplement.

Pipeline:
    1. coerce      loosely structured records -> RawLineItem
    2. classify    RawLineItem -> ClassifiedLineItem
    3. reconcile   exact / fuzzy / fallback matching
    4. variance    per-item deltas and significance
    5. statistics  subtotals, distribution, data quality
    6. detect      discrepancies
    7. risk        composite score and recommendations

The function is synchronous and performs no I/O. Everything except
`metadata` is a pure function of the inputs and the config.
"""

from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Union

from aggregate import compute_statistics
from classify import classify_items
from config import ComparisonConfig
from discrepancy import detect_discrepancies
from logging_config import get_logger, log_stage
from models import ComparisonAnalysis, ItemSide, ProcessingMetadata, RawLineItem
from normalize import coerce_line_items
from reconcile import reconcile
from risk import assess_risk
from variance import annotate_variances

logger = get_logger(__name__)

ENGINE_VERSION = "1.0.0"
TOTAL_STAGES = 7

LineItemInput = Optional[Iterable[Union[RawLineItem, Mapping[str, Any]]]]


def analysis_id_for(
    original: list[RawLineItem],
    supplement: list[RawLineItem],
    config: ComparisonConfig,
) -> str:
    """Content-derived analysis id: the same inputs and config give the same id."""
    digest = hashlib.sha256()
    for side, items in (("original", original), ("supplement", supplement)):
        digest.update(side.encode("utf-8"))
        for item in items:
            digest.update(item.model_dump_json().encode("utf-8"))
    digest.update(config.fingerprint().encode("utf-8"))
    return f"cmp-{digest.hexdigest()[:20]}"


def analyze_comparison(
    original: LineItemInput,
    supplement: LineItemInput,
    config: ComparisonConfig | None = None,
    timestamp: datetime | None = None,
) -> ComparisonAnalysis:
    """Compare two estimate versions and return the full analysis.

    Raises:
        LineItemValidationError: an item is structurally impossible.
        ReconciliationError: matching broke the partition invariant.
        CalculationError: totals disagree with the per-item variances.
    """
    config = config or ComparisonConfig()
    started = time.perf_counter()

    with log_stage(logger, 1, TOTAL_STAGES, "coerce") as stage:
        raw_original = coerce_line_items(original, ItemSide.ORIGINAL)
        raw_supplement = coerce_line_items(supplement, ItemSide.SUPPLEMENT)
        stage.note(original=len(raw_original), supplement=len(raw_supplement))

    with log_stage(logger, 2, TOTAL_STAGES, "classify") as stage:
        original_items = classify_items(raw_original, ItemSide.ORIGINAL, config)
        supplement_items = classify_items(raw_supplement, ItemSide.SUPPLEMENT, config)
        stage.note(items=len(original_items) + len(supplement_items))

    with log_stage(logger, 3, TOTAL_STAGES, "reconcile") as stage:
        result = reconcile(original_items, supplement_items, config)
        stage.note(
            matched=len(result.matched),
            removed=len(result.unmatched_original),
            new=len(result.new_supplement),
        )

    with log_stage(logger, 4, TOTAL_STAGES, "variance"):
        result = annotate_variances(result, config)

    with log_stage(logger, 5, TOTAL_STAGES, "statistics") as stage:
        statistics = compute_statistics(result, config)
        stage.note(net_change=statistics.grand_total.net_change)

    with log_stage(logger, 6, TOTAL_STAGES, "detect") as stage:
        discrepancies = detect_discrepancies(result, statistics, config)
        stage.note(discrepancies=len(discrepancies))

    with log_stage(logger, 7, TOTAL_STAGES, "risk") as stage:
        risk = assess_risk(result, statistics, discrepancies)
        stage.note(score=risk.score, level=risk.level.value)

    duration_ms = (time.perf_counter() - started) * 1000.0
    metadata = ProcessingMetadata(
        analysis_id=analysis_id_for(raw_original, raw_supplement, config),
        timestamp=timestamp or datetime.now(timezone.utc),
        duration_ms=round(duration_ms, 3),
        engine_version=ENGINE_VERSION,
        original_count=len(original_items),
        supplement_count=len(supplement_items),
        config_fingerprint=config.fingerprint(),
        decimal_precision=config.decimal_precision,
    )

    analysis = ComparisonAnalysis(
        original_items=tuple(original_items),
        supplement_items=tuple(supplement_items),
        reconciliation=result,
        statistics=statistics,
        discrepancies=tuple(discrepancies),
        risk=risk,
        metadata=metadata,
    )
    logger.info(
        "analysis_complete | analysis_id=%s | matched=%s | net_change=%s | discrepancies=%s | risk=%s | duration_ms=%.1f",
        metadata.analysis_id,
        len(result.matched),
        statistics.grand_total.net_change,
        len(discrepancies),
        risk.level.value,
        duration_ms,
    )
    return analysis
