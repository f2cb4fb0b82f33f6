"""
config.py - Explicit configuration for one comparison run.

Every tunable the engine uses lives on ComparisonConfig. The engine never
reads global state: callers pass a config per invocation, and the CLI and
HTTP entry points build one with ComparisonConfig.from_env().
"""

from __future__ import annotations

import hashlib
import os
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from logging_config import get_logger
from models import CostCategory, SignificanceTier

logger = get_logger(__name__)

ENV_PREFIX = "RECON_"

DEFAULT_CATEGORY_WEIGHTS: dict[CostCategory, float] = {
    CostCategory.LABOR: 1.0,
    CostCategory.PARTS: 1.0,
    CostCategory.MATERIALS: 0.8,
    CostCategory.EQUIPMENT: 0.9,
    CostCategory.OVERHEAD: 0.7,
    CostCategory.OTHER: 0.5,
}


class ComparisonConfig(BaseModel):
    """All tunables for classification, matching, variance and detection."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # -- Matching --
    fuzzy_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description=(
            "Minimum description similarity (0-1) for a fuzzy candidate. "
            "Source estimates used values between 0.6 and 0.8; 0.7 is the "
            "middle of that range."
        ),
    )
    enable_fuzzy_matching: bool = True
    allow_cross_category_fuzzy: bool = Field(
        default=True,
        description="Whether the fuzzy stage may pair items of different categories.",
    )
    enable_fallback_matching: bool = True
    fallback_price_tolerance: float = Field(
        default=0.10,
        ge=0.0,
        le=1.0,
        description="Relative unit-price tolerance for the category-and-price stage.",
    )
    fallback_min_similarity: float = Field(default=0.35, ge=0.0, le=1.0)

    # -- Variance --
    # Four ascending cut points separating the five significance tiers.
    significance_pct_thresholds: tuple[Decimal, Decimal, Decimal, Decimal] = (
        Decimal("1"),
        Decimal("5"),
        Decimal("15"),
        Decimal("50"),
    )
    significance_abs_thresholds: tuple[Decimal, Decimal, Decimal, Decimal] = (
        Decimal("10"),
        Decimal("50"),
        Decimal("250"),
        Decimal("1000"),
    )
    significant_tier: SignificanceTier = SignificanceTier.MODERATE
    decimal_precision: int = Field(default=2, ge=0, le=6)

    # -- Classification --
    category_weights: dict[CostCategory, float] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_WEIGHTS)
    )

    # -- Detection --
    calculation_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    net_change_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    duplicate_similarity: float = Field(default=0.95, ge=0.0, le=1.0)
    round_number_rate_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    markup_threshold_pct: Decimal = Field(default=Decimal("50"), ge=0)
    missing_item_min_amount: Decimal = Field(default=Decimal("50"), ge=0)
    outlier_z_threshold: float = Field(
        default=2.0,
        gt=0.0,
        description="Absolute z-score at which a supplement unit price or line total is an outlier.",
    )
    benford_min_items: int = Field(
        default=30,
        ge=10,
        description="Smallest supplement sample tested against the Benford first-digit distribution.",
    )
    enable_automotive_checks: bool = Field(
        default=True,
        description="Labor-hour limits, OEM-to-aftermarket switches and rarely damaged parts.",
    )

    @field_validator("significance_pct_thresholds", "significance_abs_thresholds")
    @classmethod
    def _ascending(cls, value: tuple[Decimal, ...]) -> tuple[Decimal, ...]:
        if any(threshold < 0 for threshold in value):
            raise ValueError("significance thresholds must be non-negative")
        if any(later <= earlier for earlier, later in zip(value, value[1:])):
            raise ValueError(f"significance thresholds must be strictly ascending: {value}")
        return value

    @field_validator("category_weights")
    @classmethod
    def _complete_weights(cls, value: dict[CostCategory, float]) -> dict[CostCategory, float]:
        merged = dict(DEFAULT_CATEGORY_WEIGHTS)
        merged.update(value)
        for category, weight in merged.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"category weight for {category.value} must be in [0, 1], got {weight}")
        return {category: merged[category] for category in CostCategory}

    @model_validator(mode="after")
    def _fallback_below_fuzzy(self) -> "ComparisonConfig":
        if self.fallback_min_similarity > self.fuzzy_threshold:
            logger.warning(
                "config_warning | fallback_min_similarity=%.2f | fuzzy_threshold=%.2f | "
                "reason='fallback floor above fuzzy threshold; fallback stage can never add matches'",
                self.fallback_min_similarity,
                self.fuzzy_threshold,
            )
        return self

    @property
    def money_quantum(self) -> Decimal:
        """Smallest monetary unit at the configured precision (0.01 for 2)."""
        return Decimal(1).scaleb(-self.decimal_precision)

    def weight_for(self, category: CostCategory) -> float:
        return self.category_weights.get(category, 1.0)

    def fingerprint(self) -> str:
        """Short stable hash of every setting, recorded in analysis metadata."""
        payload = self.model_dump_json()
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "ComparisonConfig":
        """Build a config from RECON_* variables, then apply explicit overrides.

        Only entry points call this. Unknown or malformed variables raise a
        pydantic ValidationError rather than being silently ignored.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            if name in {"category_weights", "significance_pct_thresholds", "significance_abs_thresholds"}:
                continue
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or not str(raw).strip():
                continue
            values[name] = str(raw).strip()

        pct_raw = env.get(f"{ENV_PREFIX}SIGNIFICANCE_PCT_THRESHOLDS")
        if pct_raw:
            values["significance_pct_thresholds"] = tuple(part.strip() for part in pct_raw.split(","))
        abs_raw = env.get(f"{ENV_PREFIX}SIGNIFICANCE_ABS_THRESHOLDS")
        if abs_raw:
            values["significance_abs_thresholds"] = tuple(part.strip() for part in abs_raw.split(","))

        values.update({key: value for key, value in overrides.items() if value is not None})
        config = cls.model_validate(values)
        logger.debug("config_loaded | source=env | keys=%s | fingerprint=%s", sorted(values), config.fingerprint())
        return config
