"""
main.py - CLI orchestration for the estimate supplement reconciler.

This module is orchestration-only:
1. load both estimates from CSV
2. analyze (coerce, classify, reconcile, variance, statistics, detect, risk)
3. explain
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Optional

import pandas as pd
from dotenv import load_dotenv
from pydantic import ValidationError

from analyze import analyze_comparison
from config import ComparisonConfig
from errors import ComparisonError, LineItemValidationError
from explain import format_analysis_json, format_report
from logging_config import get_logger, setup_logging

logger = get_logger("estimate-reconciler")

REQUIRED_COLUMNS = ["description"]
# CSV header aliases mapped onto line-item field names.
COLUMN_ALIASES: dict[str, str] = {
    "desc": "description",
    "item": "description",
    "line description": "description",
    "qty": "quantity",
    "hours": "quantity",
    "price": "unit_price",
    "unit price": "unit_price",
    "rate": "unit_price",
    "total": "line_total",
    "line total": "line_total",
    "amount": "line_total",
    "extended": "line_total",
    "category": "category_hint",
}
ITEM_COLUMNS = ["description", "quantity", "unit_price", "line_total", "category_hint"]


def _configure_output_symbols() -> str:
    """Configure stdout encoding and return a safe failure symbol."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (OSError, ValueError):
        pass

    try:
        "✗".encode(sys.stdout.encoding or "utf-8")
        return "✗"
    except (LookupError, UnicodeEncodeError):
        return "X"


FAIL_CHAR = _configure_output_symbols()


def _alias_map(columns: list[str]) -> dict[str, str]:
    """Rename aliases to field names; the first column claiming a field wins."""
    taken = {column for column in columns if column in ITEM_COLUMNS}
    renames: dict[str, str] = {}
    for column in columns:
        target = COLUMN_ALIASES.get(column)
        if target is None or target in taken:
            continue
        renames[column] = target
        taken.add(target)
    return renames


def load_line_items(csv_path: str) -> list[dict[str, Any]]:
    """Load one estimate's line items from a CSV file.

    Column names are case-insensitive and accept common aliases
    (qty, price, total, amount, ...). Fully empty rows are dropped and
    blank cells become None so coercion can record them as missing.
    """
    if csv_path is None:
        raise ValueError("csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError("csv_path cannot be empty")

    if not os.path.exists(csv_path):
        raise FileNotFoundError(
            f"Estimate CSV not found: {csv_path}\n"
            "Provide valid CSV paths with --original and --supplement"
        )

    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", dtype=str, keep_default_na=False)
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            csv_path,
        )
        df = pd.read_csv(csv_path, encoding="latin-1", dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        logger.warning("csv_empty | path=%s | fallback='no line items'", csv_path)
        return []
    except (OSError, pd.errors.ParserError) as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    # Normalize column names and remove fully empty rows.
    df.columns = [str(col).strip().lower() for col in df.columns]
    df = df.rename(columns=_alias_map(list(df.columns)))
    for column in df.columns:
        df[column] = df[column].str.strip()
    df = df.mask(df == "").dropna(how="all")

    if df.empty:
        logger.warning("csv_empty | path=%s | fallback='no line items'", csv_path)
        return []

    missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(
            f"Estimate CSV missing required columns: {missing}\n"
            f"Found: {list(df.columns)}\n"
            "Make sure your CSV has a 'description' column and quantity/price/total columns."
        )

    # Ensure optional columns exist for downstream access.
    for column in ITEM_COLUMNS:
        if column not in df.columns:
            df[column] = None

    df = df[ITEM_COLUMNS].astype(object).where(df[ITEM_COLUMNS].notna(), None)
    records = df.to_dict(orient="records")

    logger.info(
        "csv_loaded | path=%s | rows=%s | columns=%s",
        csv_path,
        len(records),
        list(df.columns),
    )
    return records


def run_comparison(
    original_csv: str,
    supplement_csv: str,
    config: ComparisonConfig | None = None,
    as_json: bool = False,
) -> str:
    """Run the full comparison for two CSV files and return rendered output."""
    original = load_line_items(original_csv)
    supplement = load_line_items(supplement_csv)
    analysis = analyze_comparison(original, supplement, config)
    if as_json:
        return json.dumps(format_analysis_json(analysis), indent=2)
    return format_report(analysis)


def build_config(args: argparse.Namespace) -> ComparisonConfig:
    """Environment (.env and RECON_*) first, then explicit CLI flags."""
    overrides: dict[str, Optional[Any]] = {
        "fuzzy_threshold": args.threshold,
        "decimal_precision": args.precision,
    }
    if args.no_fuzzy:
        overrides["enable_fuzzy_matching"] = False
    return ComparisonConfig.from_env(**overrides)


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the estimate supplement reconciler."""
    parser = argparse.ArgumentParser(
        prog="estimate-reconciler",
        description=(
            "Estimate Supplement Reconciler\n"
            "Matches an original repair estimate against its supplement and "
            "explains what changed, what looks wrong, and how risky it is."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --original original.csv --supplement supplement.csv\n"
            "  %(prog)s -o original.csv -s supplement.csv --json\n"
            "  %(prog)s -o original.csv -s supplement.csv --threshold 0.8 --verbose\n"
        ),
    )
    parser.add_argument("--original", "-o", type=str, required=True, help="Path to the original estimate CSV")
    parser.add_argument("--supplement", "-s", type=str, required=True, help="Path to the supplement estimate CSV")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the analysis as JSON instead of formatted text",
    )
    parser.add_argument(
        "--threshold",
        "-t",
        type=float,
        default=None,
        help="Fuzzy description similarity threshold between 0 and 1 (default 0.7)",
    )
    parser.add_argument("--no-fuzzy", action="store_true", help="Disable the fuzzy matching stage")
    parser.add_argument(
        "--precision",
        type=int,
        default=None,
        help="Decimal places for monetary rounding (default 2)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    load_dotenv()
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    try:
        config = build_config(args)
        logger.info(
            "cli_mode | original=%s | supplement=%s | json=%s | fingerprint=%s",
            args.original,
            args.supplement,
            args.json,
            config.fingerprint(),
        )
        print(run_comparison(args.original, args.supplement, config, as_json=args.json))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValidationError as exc:
        logger.error("cli_error | type=ValidationError | error=%s", exc)
        print(f"\n{FAIL_CHAR} Invalid configuration: {exc}")
        raise SystemExit(2) from exc
    except (LineItemValidationError, ValueError) as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ComparisonError as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\n{FAIL_CHAR} Comparison failed: {exc}")
        raise SystemExit(3) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    main()
