from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the sales export analyzer.

These are the typed domain models built by ``src.config.loader.load_config``
from the YAML configuration file.
"""

DEFAULT_EXTENSIONS: tuple[str, ...] = (".csv", ".xlsx", ".xls")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None
    port: int | None
    user: str | None
    password: str | None
    database: str | None
    dsn: str | None


@dataclass(frozen=True)
class DetectorConfig:
    """Settings for the model-assisted detection capability.

    The API key is never part of the YAML file; it is read from the
    environment (OPENAI_API_KEY) by the assist client.
    """
    enabled: bool = True  # model-assisted detection on/off
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 30.0  # single blocking round-trip budget
    classify_before_detect: bool = False  # reject previews the model says are not sales data
    summarize: bool = False  # ask the model for a one-sentence summary


@dataclass(frozen=True)
class CleaningConfig:
    """Tunables for the row-cleaning pipeline."""
    # sparse summary trigger: rows with no usable bill id, a numeric sales value
    # and at most this many other non-empty fields are treated as subtotals
    sparse_max_other_fields: int = 1


@dataclass(frozen=True)
class AnalyzerConfig:
    """Root configuration object for an analyzer run."""
    source_directory: str  # Directory scanned in batch mode
    database: DatabaseConfig  # Database connection fallback configuration
    preview_rows: int = 5  # Rows used for detection + signature
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS  # Accepted upload extensions
    user_id: int = 0  # Owner used for mapping cache / metrics rows in batch mode
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    cleaning: CleaningConfig = field(default_factory=CleaningConfig)
