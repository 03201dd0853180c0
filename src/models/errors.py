from __future__ import annotations

from typing import Any

"""Fatal analysis errors.

Every failure that aborts the analysis of one upload derives from
AnalysisError and carries an UPPER_SNAKE ``error_type`` used by the error
log. Per-cell numeric parse failures are not errors (they become NaN).
"""

__all__ = [
    "AnalysisError",
    "FormatError",
    "HeaderDetectionError",
    "ColumnMatchError",
    "NotSalesDataError",
]


class AnalysisError(Exception):
    """Base exception for upload analysis failures."""
    error_type = "ANALYSIS_ERROR"


class FormatError(AnalysisError):
    """Raised when the upload is not a readable CSV/XLSX/XLS file."""
    error_type = "FORMAT_ERROR"


class HeaderDetectionError(AnalysisError):
    """Raised when no strategy produced a usable header row."""
    error_type = "HEADER_DETECTION_ERROR"

    def __init__(self, message: str, header_row_index: int = -1) -> None:
        super().__init__(message)
        self.header_row_index = header_row_index


class ColumnMatchError(AnalysisError):
    """Raised when detected column names do not resolve to real headers."""
    error_type = "COLUMN_MATCH_ERROR"

    def __init__(self, headers: list[str], sales_detected: str, bill_detected: str) -> None:
        super().__init__("could not match detected columns")
        self.headers = list(headers)
        self.sales_detected = sales_detected
        self.bill_detected = bill_detected

    def to_payload(self) -> dict[str, Any]:
        """Diagnostic payload so the user can correct the mapping."""
        return {
            "error": str(self),
            "headers": self.headers,
            "sales_detected": self.sales_detected,
            "bill_detected": self.bill_detected,
        }


class NotSalesDataError(AnalysisError):
    """Raised when sales-like screening classifies the preview as non-sales."""
    error_type = "NOT_SALES_DATA"

    def __init__(self, confidence: float) -> None:
        super().__init__(f"upload does not look like sales data (confidence={confidence:.2f})")
        self.confidence = confidence
