from __future__ import annotations

from ..models.analysis_result import SalesMetrics
from ..models.processing_result import ProcessingResult

"""Summary rendering.

- render_summary_line(): the SUMMARY line printed at the end of a batch run
- simple_summary(): one-sentence description of a single upload's metrics,
  used when no model summary is available
"""

__all__ = [
    "format_number",
    "render_summary_line",
    "simple_summary",
]


def format_number(value: float) -> str:
    """Render integral values without decimals and avoid scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if abs(value) < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def render_summary_line(result: ProcessingResult) -> str:
    """Render a SUMMARY line from ProcessingResult.

    Format:
    SUMMARY files={total}/{total} success={success} failed={failed}
    rows={bill_rows} unique_bills={unique} total_sales={sales:.2f} elapsed_sec={elapsed}

    Examples:
        >>> from datetime import datetime, timezone
        >>> start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = ProcessingResult(
        ...     success_files=1, failed_files=0, total_bill_rows=2,
        ...     total_unique_bills=2, total_sales=300.0, start_time=start,
        ...     end_time=end, elapsed_seconds=2.0,
        ... )
        >>> render_summary_line(result)
        'SUMMARY files=1/1 success=1 failed=0 rows=2 unique_bills=2 total_sales=300.00 elapsed_sec=2'
    """
    total_files = result.total_files
    return (
        f"SUMMARY files={total_files}/{total_files} "
        f"success={result.success_files} "
        f"failed={result.failed_files} "
        f"rows={result.total_bill_rows} "
        f"unique_bills={result.total_unique_bills} "
        f"total_sales={result.total_sales:.2f} "
        f"elapsed_sec={format_number(result.elapsed_seconds)}"
    )


def simple_summary(metrics: SalesMetrics) -> str:
    return (
        f"Total sales = {metrics.total_sales:.2f}, "
        f"bill rows = {metrics.bill_row_count}, "
        f"unique bill IDs = {metrics.unique_bill_count}."
    )
