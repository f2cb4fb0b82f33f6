"""
classify.py - Rule-table cost classification.

Each raw line item gets a CostCategory and a confidence. Rules are plain
data (ClassificationRule) evaluated by ascending priority; the first rule
whose keyword or pattern trigger fires wins. Confidence grows with the
number of independent signals that agree with the winning rule:

    keyword hit, pattern hit, price inside the rule's typical range,
    extraction-supplied category hint naming the same category

and is then scaled by the configured per-category weight.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from config import ComparisonConfig
from logging_config import get_logger
from models import ClassifiedLineItem, CostCategory, ItemSide, RawLineItem
from normalize import normalize_description, stable_item_key

logger = get_logger(__name__)

# Confidence by number of agreeing signals (a winning rule always has >= 1).
SIGNAL_CONFIDENCE: dict[int, float] = {1: 0.6, 2: 0.8, 3: 0.9, 4: 1.0}

INCOMPLETE_ITEM_PENALTY = 0.5


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table."""

    name: str
    category: CostCategory
    priority: int
    keywords: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    price_range: Optional[tuple[Decimal, Decimal]] = None
    _compiled_keywords: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)
    _compiled_patterns: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        keyword_res = tuple(
            re.compile(r"(?<!\w)" + re.escape(keyword.casefold()) + r"(?!\w)") for keyword in self.keywords
        )
        pattern_res = tuple(re.compile(pattern, re.IGNORECASE) for pattern in self.patterns)
        object.__setattr__(self, "_compiled_keywords", keyword_res)
        object.__setattr__(self, "_compiled_patterns", pattern_res)

    def keyword_hit(self, text: str) -> bool:
        return any(regex.search(text) for regex in self._compiled_keywords)

    def pattern_hit(self, text: str) -> bool:
        return any(regex.search(text) for regex in self._compiled_patterns)

    def price_hit(self, unit_price: Decimal) -> bool:
        if self.price_range is None:
            return False
        low, high = self.price_range
        return low <= unit_price <= high


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="labor_time",
        category=CostCategory.LABOR,
        priority=10,
        keywords=("labor", "labour", "technician", "mechanic", "body tech", "paint tech"),
        patterns=(r"\b\d+(\.\d+)?\s*(hrs?|hours?)\b", r"@\s*\$?\d+(\.\d+)?\s*(/\s*hr|per\s*hour)"),
        price_range=(Decimal("40"), Decimal("250")),
    ),
    ClassificationRule(
        name="equipment_use",
        category=CostCategory.EQUIPMENT,
        priority=20,
        keywords=("rental", "rent", "loaner", "equipment", "machinery", "lift", "frame machine", "scan tool", "tool"),
        price_range=(Decimal("10"), Decimal("1500")),
    ),
    ClassificationRule(
        name="overhead_fees",
        category=CostCategory.OVERHEAD,
        priority=30,
        keywords=(
            "fee",
            "fees",
            "disposal",
            "environmental",
            "hazmat",
            "hazardous waste",
            "admin",
            "administrative",
            "overhead",
            "storage",
            "towing",
            "tow",
        ),
        price_range=(Decimal("0"), Decimal("300")),
    ),
    ClassificationRule(
        name="materials_consumables",
        category=CostCategory.MATERIALS,
        priority=40,
        keywords=(
            "paint",
            "primer",
            "clear coat",
            "clearcoat",
            "adhesive",
            "sealant",
            "sealer",
            "fluid",
            "oil",
            "coolant",
            "antifreeze",
            "material",
            "materials",
            "supplies",
            "consumables",
            "sandpaper",
            "masking",
            "tape",
            "thinner",
            "reducer",
        ),
        price_range=(Decimal("0"), Decimal("500")),
    ),
    ClassificationRule(
        name="parts_components",
        category=CostCategory.PARTS,
        priority=50,
        keywords=(
            "part",
            "parts",
            "component",
            "oem",
            "aftermarket",
            "genuine",
            "filter",
            "belt",
            "hose",
            "gasket",
            "brake pad",
            "brake pads",
            "rotor",
            "caliper",
            "bumper",
            "fender",
            "hood",
            "door",
            "mirror",
            "headlight",
            "headlamp",
            "taillight",
            "grille",
            "bracket",
            "sensor",
            "module",
            "radiator",
            "condenser",
            "alternator",
            "starter",
            "battery",
            "strut",
            "shock",
            "bearing",
            "windshield",
        ),
        patterns=(r"\b[a-z0-9]{2,5}-[a-z0-9]{3,6}(-[a-z0-9]{1,6})?\b",),
        price_range=(Decimal("5"), Decimal("5000")),
    ),
    ClassificationRule(
        name="labor_operations",
        category=CostCategory.LABOR,
        priority=60,
        keywords=(
            "service",
            "repair",
            "install",
            "installation",
            "replace",
            "replacement",
            "remove and replace",
            "remove and install",
            "diagnostic",
            "diagnosis",
            "inspection",
            "alignment",
            "calibration",
            "refinish",
            "blend",
            "change",
            "adjust",
            "programming",
        ),
        price_range=(Decimal("25"), Decimal("1000")),
    ),
)


def _hint_category(hint: Optional[str]) -> Optional[CostCategory]:
    if not hint:
        return None
    try:
        return CostCategory(hint.strip().lower())
    except ValueError:
        return None


def classify_item(
    raw: RawLineItem,
    side: ItemSide = ItemSide.ORIGINAL,
    index: int = 0,
    config: ComparisonConfig | None = None,
    rules: Sequence[ClassificationRule] = DEFAULT_RULES,
) -> ClassifiedLineItem:
    """Classify one raw line item. Pure function of its arguments."""
    config = config or ComparisonConfig()
    normalized = normalize_description(raw.description)
    # Keyword matching runs on the case-folded original text so that
    # operation codes such as "R&I" survive punctuation stripping.
    searchable = f"{raw.description.casefold()} {normalized}"
    hinted = _hint_category(raw.category_hint)
    warnings: list[str] = []

    if raw.category_hint and hinted is None:
        warnings.append(f"Unrecognized category hint '{raw.category_hint}' ignored")

    category = CostCategory.OTHER
    confidence = 0.0
    matched_rule: Optional[str] = None

    for rule in sorted(rules, key=lambda candidate: (candidate.priority, candidate.name)):
        keyword = rule.keyword_hit(searchable)
        pattern = rule.pattern_hit(searchable)
        if not (keyword or pattern):
            continue

        signals = int(keyword) + int(pattern)
        signals += int(rule.price_hit(raw.unit_price))
        signals += int(hinted == rule.category)
        category = rule.category
        matched_rule = rule.name
        confidence = SIGNAL_CONFIDENCE[min(signals, 4)] * config.weight_for(rule.category)
        break

    if matched_rule is None and hinted is not None:
        warnings.append(f"No rule matched; category hint '{hinted.value}' not used without a rule")

    if not raw.is_complete:
        confidence *= INCOMPLETE_ITEM_PENALTY
        warnings.append(f"Incomplete line item, substituted fields: {', '.join(raw.missing_fields)}")

    confidence = round(max(0.0, min(1.0, confidence)), 4)
    item = ClassifiedLineItem(
        item_id=stable_item_key(side, index, normalized),
        side=side,
        index=index,
        raw=raw,
        normalized_description=normalized,
        category=category,
        classification_confidence=confidence,
        matched_rule=matched_rule,
        warnings=tuple(warnings),
    )
    logger.debug(
        "classify_item | side=%s | index=%s | description=%r | category=%s | rule=%s | confidence=%.2f",
        side.value,
        index,
        raw.description,
        category.value,
        matched_rule,
        confidence,
    )
    return item


def classify_items(
    raws: Iterable[RawLineItem],
    side: ItemSide,
    config: ComparisonConfig | None = None,
    rules: Sequence[ClassificationRule] = DEFAULT_RULES,
) -> list[ClassifiedLineItem]:
    """Classify an ordered list, preserving input order and indices."""
    config = config or ComparisonConfig()
    items = [classify_item(raw, side, index, config, rules) for index, raw in enumerate(raws)]
    unclassified = sum(1 for item in items if item.matched_rule is None)
    logger.info(
        "classify_complete | side=%s | items=%s | unclassified=%s",
        side.value,
        len(items),
        unclassified,
    )
    return items
