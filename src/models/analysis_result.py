from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .column_mapping import ColumnMapping

"""Result models produced by a single upload analysis.

SalesMetrics is the terminal output (persisted by the caller); the other
classes form the diagnostic bundle consumed by reporting.
"""

__all__ = [
    "SalesMetrics",
    "StrategyAttempt",
    "DetectionResult",
    "CleaningReport",
    "AnalysisResult",
]


@dataclass(frozen=True)
class SalesMetrics:
    """The three headline figures of an upload."""
    total_sales: float  # 小数2桁に丸め済み
    bill_row_count: int
    unique_bill_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sales": self.total_sales,
            "bill_row_count": self.bill_row_count,
            "unique_bill_count": self.unique_bill_count,
        }


@dataclass(frozen=True)
class StrategyAttempt:
    """Outcome of one detection strategy (kept for reporting even on failure)."""
    strategy: str  # cache / model / heuristic
    succeeded: bool
    message: str


@dataclass(frozen=True)
class DetectionResult:
    """Header row + target column names chosen by the detector cascade."""
    mapping: ColumnMapping
    strategy: str  # Strategy that produced the mapping
    used_external_assist: bool
    diagnostic_message: str
    attempts: tuple[StrategyAttempt, ...] = ()


@dataclass(frozen=True)
class CleaningReport:
    """Original record indices removed by each cleaning stage."""
    total_rows: int
    removed_blank: frozenset[int] = frozenset()
    removed_totalish: frozenset[int] = frozenset()
    removed_summary: frozenset[int] = frozenset()
    removed_unusable_bill: frozenset[int] = frozenset()
    kept: tuple[int, ...] = ()

    @property
    def dropped_blank_rows(self) -> int:
        return len(self.removed_blank)

    @property
    def dropped_totalish_rows(self) -> int:
        return len(self.removed_totalish)

    @property
    def dropped_summary_rows(self) -> int:
        return len(self.removed_summary)

    @property
    def final_rows_used(self) -> int:
        return len(self.kept)


@dataclass(frozen=True)
class AnalysisResult:
    """Everything one upload analysis produced.

    ``to_dict`` renders the response layout used by reporting:
    summary / metrics / meta / cleaning.
    """
    file_name: str
    signature: str
    headers: list[str]
    sales_column: str  # Resolved header text (after column matching)
    bill_column: str
    detection: DetectionResult
    cleaning: CleaningReport
    metrics: SalesMetrics
    summary: str = ""

    def diagnostics(self) -> dict[str, Any]:
        """Flat diagnostic bundle for the reporting layer."""
        return {
            "header_row_index": self.detection.mapping.header_row_index,
            "sales_column": self.sales_column,
            "bill_column": self.bill_column,
            "used_external_assist": self.detection.used_external_assist,
            "diagnostic_message": self.detection.diagnostic_message,
            "dropped_blank_rows": self.cleaning.dropped_blank_rows,
            "dropped_totalish_rows": self.cleaning.dropped_totalish_rows,
            "dropped_summary_rows": self.cleaning.dropped_summary_rows,
            "final_rows_used": self.cleaning.final_rows_used,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "metrics": self.metrics.to_dict(),
            "meta": {
                "file_name": self.file_name,
                "header_row": self.detection.mapping.header_row_index,
                "sales_column": self.sales_column,
                "bill_column": self.bill_column,
                "ai_used": self.detection.used_external_assist,
                "ai_message": self.detection.diagnostic_message,
                "strategy": self.detection.strategy,
                "signature": self.signature,
            },
            "cleaning": {
                "dropped_blank_rows": self.cleaning.dropped_blank_rows,
                "dropped_totalish_second_col": self.cleaning.dropped_totalish_rows,
                "dropped_summary_rows": self.cleaning.dropped_summary_rows,
                "final_rows_used": self.cleaning.final_rows_used,
            },
        }
