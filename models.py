"""
models.py - Data Models for the Estimate Comparison Pipeline

This file defines ALL data structures used across the comparison engine.
Every stage communicates exclusively through these models:

    normalize.py   ->  RawLineItem
    classify.py    ->  ClassifiedLineItem
    reconcile.py   ->  ReconciliationResult (MatchedItemPair, ResidualItem)
    variance.py    ->  ReconciliationResult with VarianceRecord attached
    aggregate.py   ->  VarianceStatistics
    discrepancy.py ->  list[Discrepancy]
    risk.py        ->  RiskAssessment
    analyze.py     ->  ComparisonAnalysis (the root output)

Design principles:
1. Each stage's output is the next stage's input
2. Every model is frozen; stages build new objects instead of mutating
3. Money, quantities and percentages are Decimal, never float
4. Item identity is content-derived (see normalize.stable_item_key), so
   identical input always produces identical ids
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CostCategory(str, Enum):
    """Cost bucket a line item is billed under."""

    LABOR = "labor"
    PARTS = "parts"
    MATERIALS = "materials"
    EQUIPMENT = "equipment"
    OVERHEAD = "overhead"
    OTHER = "other"


class ItemSide(str, Enum):
    ORIGINAL = "original"
    SUPPLEMENT = "supplement"


class MatchStage(str, Enum):
    """Reconciler stage that produced a pair, in evaluation order."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    FALLBACK = "fallback"


class ResidualKind(str, Enum):
    REMOVED = "removed"
    NEW = "new"


class ChangeType(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    UNCHANGED = "unchanged"
    NEW = "new"
    REMOVED = "removed"


class SignificanceTier(str, Enum):
    """Ordered buckets for how much a variance matters."""

    NEGLIGIBLE = "negligible"
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    EXTREME = "extreme"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def from_rank(cls, rank: int) -> "SignificanceTier":
        return _TIER_ORDER[max(0, min(rank, len(_TIER_ORDER) - 1))]


_TIER_ORDER = list(SignificanceTier)


class DiscrepancyType(str, Enum):
    CALCULATION_ERROR = "calculation_error"
    DUPLICATE_ITEM = "duplicate_item"
    MISSING_ITEM = "missing_item"
    SUSPICIOUS_PRICING = "suspicious_pricing"
    DATA_INCONSISTENCY = "data_inconsistency"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)

    @property
    def weight(self) -> int:
        """Points contributed to the risk scorer's discrepancy component."""
        return {"low": 1, "medium": 3, "high": 6, "critical": 10}[self.value]


class RiskLevel(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class RawLineItem(_Frozen):
    """One priced entry exactly as the extraction service delivered it.

    This model stores what is on the estimate and nothing more. When the
    record had to be repaired during coercion (unparsable number, missing
    description, derived total), the repaired field names are listed in
    `missing_fields` so downstream stages can exclude the item from strict
    calculations and degrade the data-quality score.
    """

    description: str = Field(
        ...,
        description=(
            "Line description as printed on the estimate. Examples: "
            "'Engine Oil Change', 'R&I Front Bumper Cover', 'Shop Supplies'."
        ),
    )
    quantity: Decimal = Field(
        ...,
        ge=0,
        description="Units or hours billed. Negative quantities are rejected.",
    )
    unit_price: Decimal = Field(
        ...,
        description="Price per unit. May be negative for credits.",
    )
    line_total: Decimal = Field(
        ...,
        description=(
            "Extended amount for the line. Normally quantity x unit_price; "
            "disagreement beyond tolerance is reported as a calculation error."
        ),
    )
    category_hint: Optional[str] = Field(
        default=None,
        description="Optional category suggested by the extraction service.",
    )
    missing_fields: tuple[str, ...] = Field(
        default=(),
        description="Fields that were absent or unparsable and had to be substituted.",
    )

    @property
    def is_complete(self) -> bool:
        """Whether every required field was present and parsable."""
        return not self.missing_fields


class ClassifiedLineItem(_Frozen):
    """A RawLineItem with its stable identity and cost category."""

    item_id: str = Field(
        ...,
        description=(
            "Content-derived identifier: side prefix, input index and a hash "
            "of the normalized description. Stable across runs."
        ),
    )
    side: ItemSide
    index: int = Field(..., ge=0, description="Position in the input list.")
    raw: RawLineItem
    normalized_description: str
    category: CostCategory
    classification_confidence: float = Field(..., ge=0.0, le=1.0)
    matched_rule: Optional[str] = Field(
        default=None,
        description="Name of the classification rule that fired, None when none did.",
    )
    warnings: tuple[str, ...] = ()

    @property
    def description(self) -> str:
        return self.raw.description

    @property
    def quantity(self) -> Decimal:
        return self.raw.quantity

    @property
    def unit_price(self) -> Decimal:
        return self.raw.unit_price

    @property
    def line_total(self) -> Decimal:
        return self.raw.line_total

    @property
    def is_complete(self) -> bool:
        return self.raw.is_complete


class VarianceRecord(_Frozen):
    """Signed differences for one reconciled item.

    Percentages are expressed in percent (50.00 means +50%) and are None
    exactly when the corresponding baseline is zero. Residual items carry a
    zero baseline: a new item has no original to compare against, and a
    removed item is reported as an absolute loss rather than "-100%".
    """

    quantity_delta: Decimal
    unit_price_delta: Decimal
    total_delta: Decimal
    baseline_quantity: Decimal
    baseline_unit_price: Decimal
    baseline_total: Decimal
    quantity_pct: Optional[Decimal] = None
    unit_price_pct: Optional[Decimal] = None
    total_pct: Optional[Decimal] = None
    change_type: ChangeType
    significance: SignificanceTier
    is_significant: bool = False


class MatchSignals(_Frozen):
    """Per-field similarity signals behind one matching decision."""

    description_similarity: float = Field(..., ge=0.0, le=1.0)
    category_match: bool
    price_proximity: float = Field(..., ge=0.0, le=1.0)
    composite: float = Field(..., ge=0.0, le=1.0)


class MatchedItemPair(_Frozen):
    """An original and a supplement item judged to be the same operation."""

    original: ClassifiedLineItem
    supplement: ClassifiedLineItem
    stage: MatchStage
    score: float = Field(..., ge=0.0, le=1.0)
    signals: MatchSignals
    variance: Optional[VarianceRecord] = None

    @property
    def pair_id(self) -> str:
        return f"{self.original.item_id}:{self.supplement.item_id}"

    @property
    def category(self) -> CostCategory:
        """Pairs are reported under the supplement's (most recent) category."""
        return self.supplement.category


class ResidualItem(_Frozen):
    """An item with no counterpart on the other side."""

    item: ClassifiedLineItem
    kind: ResidualKind
    variance: Optional[VarianceRecord] = None

    @property
    def category(self) -> CostCategory:
        return self.item.category


class ReconciliationResult(_Frozen):
    matched: tuple[MatchedItemPair, ...] = ()
    unmatched_original: tuple[ResidualItem, ...] = ()
    new_supplement: tuple[ResidualItem, ...] = ()
    stage_counts: dict[str, int] = Field(default_factory=dict)

    @property
    def original_count(self) -> int:
        return len(self.matched) + len(self.unmatched_original)

    @property
    def supplement_count(self) -> int:
        return len(self.matched) + len(self.new_supplement)

    @property
    def match_rate(self) -> float:
        """Matched pairs over the larger of the two item counts."""
        larger = max(self.original_count, self.supplement_count)
        return round(len(self.matched) / larger, 4) if larger else 0.0


class ChangeCounts(_Frozen):
    increase: int = 0
    decrease: int = 0
    unchanged: int = 0
    new: int = 0
    removed: int = 0

    @property
    def total(self) -> int:
        return self.increase + self.decrease + self.unchanged + self.new + self.removed


class CategorySubtotal(_Frozen):
    category: CostCategory
    original_total: Decimal
    supplement_total: Decimal
    net_change: Decimal
    net_change_pct: Optional[Decimal] = None
    item_count: int = 0
    significant_count: int = 0
    change_counts: ChangeCounts = Field(default_factory=ChangeCounts)


class GrandTotal(_Frozen):
    original_total: Decimal
    supplement_total: Decimal
    net_change: Decimal
    net_change_pct: Optional[Decimal] = None
    item_count: int = 0
    significant_count: int = 0


class DescriptiveStats(_Frozen):
    """Statistics over the signed total variance of every reconciled item."""

    count: int = 0
    mean: Decimal = Decimal("0")
    median: Decimal = Decimal("0")
    std_dev: Decimal = Decimal("0")
    minimum: Decimal = Decimal("0")
    maximum: Decimal = Decimal("0")


class DataQuality(_Frozen):
    completeness: float = Field(..., ge=0.0, le=1.0)
    consistency: float = Field(..., ge=0.0, le=1.0)
    classification_confidence: float = Field(..., ge=0.0, le=1.0)
    score: float = Field(..., ge=0.0, le=1.0)
    issues: tuple[str, ...] = ()


class VarianceStatistics(_Frozen):
    category_subtotals: tuple[CategorySubtotal, ...]
    grand_total: GrandTotal
    change_counts: ChangeCounts
    descriptive: DescriptiveStats
    data_quality: DataQuality
    significant_item_ids: tuple[str, ...] = ()

    def subtotal_for(self, category: CostCategory) -> Optional[CategorySubtotal]:
        for subtotal in self.category_subtotals:
            if subtotal.category == category:
                return subtotal
        return None


class Discrepancy(_Frozen):
    """A detected anomaly, distinct from an ordinary variance."""

    discrepancy_id: str
    type: DiscrepancyType
    severity: Severity
    description: str
    affected_item_ids: tuple[str, ...]
    estimated_impact: Decimal = Decimal("0")
    confidence: float = Field(..., ge=0.0, le=1.0)
    recommended_action: str


class RiskFactor(_Frozen):
    name: str
    weight: float
    value: float = Field(..., ge=0.0, le=1.0, description="Normalized factor value.")
    contribution: float = Field(..., ge=0.0, le=100.0, description="Points added to the score.")
    description: str


class RiskAssessment(_Frozen):
    score: float = Field(..., ge=0.0, le=100.0)
    level: RiskLevel
    factors: tuple[RiskFactor, ...] = ()
    recommendations: tuple[str, ...] = ()


class ProcessingMetadata(_Frozen):
    analysis_id: str = Field(
        ...,
        description="Hash of the inputs and configuration; identical input gives the same id.",
    )
    timestamp: datetime
    duration_ms: float = Field(..., ge=0.0)
    engine_version: str
    original_count: int
    supplement_count: int
    config_fingerprint: str
    decimal_precision: int = Field(default=2, ge=0, description="Places used for monetary amounts in this analysis.")


class ComparisonAnalysis(_Frozen):
    """Root output of one comparison request.

    Everything a review dashboard or report generator needs is here; no
    consumer should re-run matching or statistics. `metadata` is the only
    section that varies between two runs over identical input.
    """

    original_items: tuple[ClassifiedLineItem, ...]
    supplement_items: tuple[ClassifiedLineItem, ...]
    reconciliation: ReconciliationResult
    statistics: VarianceStatistics
    discrepancies: tuple[Discrepancy, ...] = ()
    risk: RiskAssessment
    metadata: ProcessingMetadata

    @property
    def content_digest(self) -> str:
        """SHA-256 of the serialized analysis without processing metadata."""
        payload = self.model_dump_json(exclude={"metadata"})
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
