from __future__ import annotations

import math
from collections.abc import Sequence

from ..models.analysis_result import SalesMetrics
from ..models.row_data import RowData

"""Metrics aggregation over cleaned rows.

Sales cells are parsed leniently: currency symbols, thousands separators and
whitespace are discarded. A cell that does not parse is NaN and contributes
nothing (it is not counted as zero).
"""

__all__ = [
    "to_numeric",
    "is_number",
    "round2",
    "compute_metrics",
]

_NUMERIC_CHARS = frozenset("0123456789.-")


def to_numeric(text: str) -> float:
    """Parse a sales cell; NaN when empty or unparsable.

    >>> to_numeric("₹1,234.50")
    1234.5
    >>> math.isnan(to_numeric("—"))
    True
    """
    t = text.strip()
    if not t:
        return math.nan
    cleaned = "".join(ch for ch in t if ch in _NUMERIC_CHARS)
    if not cleaned:
        return math.nan
    try:
        # "1.2.3" や "12-5" は float() が拒否 -> NaN
        return float(cleaned)
    except ValueError:
        return math.nan


def is_number(value: float) -> bool:
    return not math.isnan(value)


def round2(value: float) -> float:
    """Round half away from zero to 2 decimal places."""
    scaled = math.floor(abs(value) * 100 + 0.5) / 100
    return math.copysign(scaled, value) if scaled else 0.0


def compute_metrics(rows: Sequence[RowData], sales_col: str, bill_col: str) -> SalesMetrics:
    """Sum sales and count bills over rows that survived cleaning."""
    total = 0.0
    for r in rows:
        v = to_numeric(r.get(sales_col))
        if is_number(v):
            total += v

    seen: set[str] = set()
    for r in rows:
        bill = r.get(bill_col).strip()
        if bill:
            seen.add(bill)

    return SalesMetrics(
        total_sales=round2(total),
        bill_row_count=len(rows),
        unique_bill_count=len(seen),
    )
