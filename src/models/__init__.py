"""Domain models for the sales export analyzer.

This package contains the domain model classes shared by the reader,
detection, cleaning and aggregation services.
"""

from .analysis_result import AnalysisResult, CleaningReport, DetectionResult, SalesMetrics, StrategyAttempt
from .column_mapping import ColumnMapping
from .config_models import AnalyzerConfig, CleaningConfig, DatabaseConfig, DetectorConfig
from .row_data import RowData
from .upload_file import FileStatus, UploadFile

__all__ = [
    # Configuration models
    "AnalyzerConfig",
    "CleaningConfig",
    "DatabaseConfig",
    "DetectorConfig",
    # Detection / cleaning models
    "ColumnMapping",
    "RowData",
    "StrategyAttempt",
    "DetectionResult",
    "CleaningReport",
    # Result models
    "SalesMetrics",
    "AnalysisResult",
    "FileStatus",
    "UploadFile",
]
