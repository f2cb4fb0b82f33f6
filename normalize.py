"""
normalize.py - Input normalization and line-item coercion.

Core normalizers:
    normalize_description(text)  -> case-folded, accent- and punctuation-free text
    normalize_money(value)       -> Decimal or None when unparsable
    quantize_money(value, quantum)
    stable_item_key(side, index, normalized_description)

Coercion:
    coerce_line_item(record, side, index)   -> RawLineItem
    coerce_line_items(records, side)        -> list[RawLineItem]

Design principles:
    - SAME normalization on BOTH estimate versions
    - Pure transformations, no I/O
    - A broken field is substituted and recorded, not fatal; only a
      structurally impossible item (negative quantity) raises
"""

from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from errors import LineItemValidationError
from logging_config import get_logger
from models import ItemSide, RawLineItem

logger = get_logger(__name__)

NULL_TOKENS = {"", "n/a", "na", "none", "null", "unknown", "-", "--"}

# Largest accepted decimal exponent: values of 10^12 or more are treated as
# unparsable so products and sums stay inside the 28-digit decimal context.
MAX_MONEY_EXPONENT = 11
ITEM_FIELDS = ("description", "quantity", "unit_price", "line_total")

DESCRIPTION_KEYS = ("description", "desc", "item", "name")
QUANTITY_KEYS = ("quantity", "qty", "hours")
PRICE_KEYS = ("unit_price", "price", "rate")
TOTAL_KEYS = ("line_total", "total", "amount", "extended")
HINT_KEYS = ("category_hint", "category")

# Common estimate shorthand expanded before comparison so that
# "R&R Frt Bumper" and "Remove and Replace Front Bumper" compare closely.
ABBREVIATIONS: dict[str, str] = {
    "r&r": "remove and replace",
    "r & r": "remove and replace",
    "r&i": "remove and install",
    "r & i": "remove and install",
    "frt": "front",
    "rr": "rear",
    "lt": "left",
    "rt": "right",
    "assy": "assembly",
    "repl": "replace",
    "refn": "refinish",
    "blnd": "blend",
    "hrs": "hours",
    "hr": "hour",
}


def normalize_description(text: Any) -> str:
    """Normalize a line description for comparison."""
    if text is None:
        return ""

    if not isinstance(text, str):
        text = str(text)

    if not text.strip():
        return ""

    name = text.casefold().strip()
    name = unicodedata.normalize("NFD", name)
    name = "".join(char for char in name if unicodedata.category(char) != "Mn")

    for short, expanded in sorted(ABBREVIATIONS.items(), key=lambda item: -len(item[0])):
        if not short.replace(" ", "").isalnum():
            name = name.replace(short, f" {expanded} ")

    name = re.sub(r"[^\w\s]", " ", name, flags=re.UNICODE)
    name = name.replace("_", " ")

    words = [ABBREVIATIONS.get(word, word) for word in name.split()]
    normalized = " ".join(words)
    logger.debug("normalize_description | raw=%r | normalized=%r", text, normalized)
    return normalized


def normalize_money(value: Any) -> Decimal | None:
    """Parse a money or quantity value into a Decimal.

    Accepts numbers and strings with currency symbols, thousands separators
    and accounting-style parentheses for negatives. Returns None for
    missing, non-finite, unparsable or out-of-range input.
    """
    parsed = _parse_money(value)
    if parsed is None or parsed == 0:
        return parsed
    if parsed.adjusted() > MAX_MONEY_EXPONENT:
        logger.warning("normalize_money | out_of_range | raw=%r | fallback=None", value)
        return None
    return parsed


def _parse_money(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        return value if value.is_finite() else None

    if isinstance(value, int):
        return Decimal(value)

    if isinstance(value, float):
        if not math.isfinite(value):
            logger.warning("normalize_money | non_finite=%r | fallback=None", value)
            return None
        return Decimal(str(value))

    try:
        cleaned = str(value).strip()
    except Exception:
        return None

    if cleaned.lower() in NULL_TOKENS:
        return None

    is_negative = (
        cleaned.startswith("-")
        or (cleaned.startswith("(") and cleaned.endswith(")"))
        or "-$" in cleaned
        or "$-" in cleaned
    )

    cleaned = (
        cleaned.replace("$", "")
        .replace("(", "")
        .replace(")", "")
        .replace(",", "")
        .replace("-", "")
        .strip()
    )
    if not cleaned:
        return None

    try:
        parsed = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        logger.warning("normalize_money | parse_failed | raw=%r | fallback=None", value)
        return None

    if not parsed.is_finite():
        logger.warning("normalize_money | non_finite_parsed=%r | fallback=None", value)
        return None

    return -parsed if is_negative else parsed


def quantize_money(value: Decimal, quantum: Decimal = Decimal("0.01")) -> Decimal:
    """Round half-up to the given monetary quantum."""
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def stable_item_key(side: ItemSide | str, index: int, normalized_description: str) -> str:
    """Content-derived identifier for a line item.

    The same description at the same input position always yields the same
    key, so ids never depend on wall clock or random state.
    """
    side_value = side.value if isinstance(side, ItemSide) else str(side)
    digest = hashlib.sha1(
        f"{side_value}|{index}|{normalized_description}".encode("utf-8")
    ).hexdigest()[:8]
    return f"{side_value[:4]}-{index:04d}-{digest}"


def _first_present(record: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return None


def coerce_line_item(
    record: RawLineItem | Mapping[str, Any],
    side: ItemSide | str = ItemSide.ORIGINAL,
    index: int = 0,
) -> RawLineItem:
    """Turn one loosely structured record into a RawLineItem.

    Substitutions (recorded in missing_fields):
        description missing    -> ""
        quantity missing       -> 1
        unit_price missing     -> line_total / quantity (0 if impossible)
        line_total missing     -> quantity x unit_price
        not a mapping          -> empty item, every field recorded

    Amounts of 10^12 or more count as unparsable.
    """
    side_value = side.value if isinstance(side, ItemSide) else str(side)

    if isinstance(record, RawLineItem):
        amounts = (record.quantity, record.unit_price, record.line_total)
        if all(normalize_money(amount) is not None for amount in amounts):
            return record
        record = record.model_dump(exclude={"missing_fields"})

    if not isinstance(record, Mapping):
        logger.warning(
            "coerce_line_item | side=%s | index=%s | type=%s | fallback='empty item'",
            side_value,
            index,
            type(record).__name__,
        )
        return RawLineItem(
            description="",
            quantity=Decimal("1"),
            unit_price=Decimal("0"),
            line_total=Decimal("0"),
            missing_fields=ITEM_FIELDS,
        )

    lowered = {str(key).strip().lower(): value for key, value in record.items()}
    missing: list[str] = []

    raw_description = _first_present(lowered, DESCRIPTION_KEYS)
    description = str(raw_description).strip() if raw_description is not None else ""
    if not description:
        missing.append("description")

    quantity = normalize_money(_first_present(lowered, QUANTITY_KEYS))
    unit_price = normalize_money(_first_present(lowered, PRICE_KEYS))
    line_total = normalize_money(_first_present(lowered, TOTAL_KEYS))

    if quantity is not None and quantity < 0:
        raise LineItemValidationError(
            f"negative quantity {quantity} cannot be reconciled into a valid total",
            side=side_value,
            index=index,
            field="quantity",
        )

    if quantity is None:
        missing.append("quantity")
        quantity = Decimal("1")

    if unit_price is None:
        missing.append("unit_price")
        if line_total is not None and quantity != 0:
            unit_price = line_total / quantity
        else:
            unit_price = Decimal("0")

    if line_total is None:
        missing.append("line_total")
        line_total = quantity * unit_price

    hint_raw = _first_present(lowered, HINT_KEYS)
    category_hint = str(hint_raw).strip().lower() if hint_raw is not None and str(hint_raw).strip() else None

    if missing:
        logger.warning(
            "coerce_line_item | side=%s | index=%s | missing_fields=%s | fallback='substituted'",
            side_value,
            index,
            missing,
        )

    return RawLineItem(
        description=description,
        quantity=quantity,
        unit_price=unit_price,
        line_total=line_total,
        category_hint=category_hint,
        missing_fields=tuple(missing),
    )


def coerce_line_items(
    records: Iterable[RawLineItem | Mapping[str, Any]] | None,
    side: ItemSide | str = ItemSide.ORIGINAL,
) -> list[RawLineItem]:
    """Coerce an ordered list of records, preserving input order."""
    if records is None:
        return []
    if isinstance(records, (str, bytes, Mapping)):
        side_value = side.value if isinstance(side, ItemSide) else str(side)
        raise LineItemValidationError(
            f"line items must be a list, got {type(records).__name__}",
            side=side_value,
        )
    return [coerce_line_item(record, side, index) for index, record in enumerate(records)]
