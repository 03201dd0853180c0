from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

"""Processing result models for batch runs.

FileStat captures one analyzed upload; ProcessingResult aggregates a whole
batch and feeds the SUMMARY output line.
"""


@dataclass(frozen=True)
class FileStat:
    """Per-file processing statistics (internal helper for ProcessingResult)."""
    file_name: str  # ファイル名
    status: str  # success/failed
    bill_rows: int  # final_rows_used
    unique_bills: int
    total_sales: float
    elapsed_seconds: float
    strategy: str = ""  # cache / model / heuristic ("" on failure)
    error_type: str | None = None


@dataclass(frozen=True)
class ProcessingResult:
    """Aggregated results and summary output for a batch run."""
    success_files: int
    failed_files: int
    total_bill_rows: int
    total_unique_bills: int  # sum of per-file unique counts (not de-duplicated across files)
    total_sales: float
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    file_stats: list[FileStat] | None = None
    uploads: list[Any] | None = None  # UploadFile per input (for --json reporting)

    @property
    def total_files(self) -> int:
        return self.success_files + self.failed_files
