from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

"""UploadFile domain model and FileStatus enum.

The UploadFile represents the processing context for a single uploaded
export and the outcome of its analysis (success or failed).
"""


class FileStatus(Enum):
    """Outcome of an UploadFile analysis."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadFile:
    """Processing context for a single uploaded export file."""
    path: Path                           # Full path to the export
    name: str                            # File name
    status: FileStatus
    start_time: datetime | None = None   # Processing start (UTC)
    end_time: datetime | None = None     # Processing end (UTC)
    result: Any = None                   # AnalysisResult on success
    metrics_id: int | None = None        # sales_metrics row id (live DB mode only)
    error_type: str | None = None        # UPPER_SNAKE classification on failure
    error: str | None = None             # Failure reason summary

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()
