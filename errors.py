"""
errors.py - Exception types raised by the comparison engine.

Only structurally impossible input or an internal invariant breach reaches
the caller. Item-level problems are recorded on the item instead.
"""

from __future__ import annotations

from typing import Optional


class ComparisonError(Exception):
    """Base class for every error raised by the comparison engine."""


class LineItemValidationError(ComparisonError, ValueError):
    """A single line item cannot be turned into a valid RawLineItem."""

    def __init__(
        self,
        message: str,
        *,
        side: Optional[str] = None,
        index: Optional[int] = None,
        field: Optional[str] = None,
    ) -> None:
        location = []
        if side:
            location.append(f"side={side}")
        if index is not None:
            location.append(f"index={index}")
        if field:
            location.append(f"field={field}")
        suffix = f" ({', '.join(location)})" if location else ""
        super().__init__(f"{message}{suffix}")
        self.side = side
        self.index = index
        self.field = field


class ReconciliationError(ComparisonError):
    """Matching produced an invalid partition of the input items."""

    def __init__(self, message: str, *, original_count: int, supplement_count: int) -> None:
        super().__init__(
            f"{message} (original_count={original_count}, supplement_count={supplement_count})"
        )
        self.original_count = original_count
        self.supplement_count = supplement_count


class CalculationError(ComparisonError, ArithmeticError):
    """Aggregated totals disagree with the per-item variance records."""
