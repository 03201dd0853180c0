from __future__ import annotations

import re

from ..models.analysis_result import SalesMetrics

"""Sales metrics from free text.

Used when a user types the figures instead of uploading a file. Explicit
values win when all three are supplied; otherwise the first decimal number in
the text is the total and the first two remaining standalone integers (not
part of a decimal) are the bill row and unique bill counts.
"""

__all__ = [
    "metrics_from_text",
]

_FLOAT_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)")
_INT_RE = re.compile(r"(?<![0-9])(?<![0-9]\.)([0-9]{1,9})(?!\.?[0-9])")


def metrics_from_text(
    text: str,
    total_sales: float | None = None,
    bill_row_count: int | None = None,
    unique_bill_count: int | None = None,
) -> SalesMetrics:
    if total_sales is not None and bill_row_count is not None and unique_bill_count is not None:
        return SalesMetrics(
            total_sales=float(total_sales),
            bill_row_count=int(bill_row_count),
            unique_bill_count=int(unique_bill_count),
        )

    t = text.lower()
    m = _FLOAT_RE.search(t)
    amount = float(m.group(1)) if m else 0.0
    if m:
        # 合計に使った数値は件数として数えない
        t = t[: m.start()] + " " + t[m.end():]
    counts = [int(x) for x in _INT_RE.findall(t)]
    rows = counts[0] if len(counts) > 0 else 0
    uniq = counts[1] if len(counts) > 1 else 0
    return SalesMetrics(total_sales=amount, bill_row_count=rows, unique_bill_count=uniq)
