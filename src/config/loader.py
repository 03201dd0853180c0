from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from src.models.config_models import (
    DEFAULT_EXTENSIONS,
    AnalyzerConfig,
    CleaningConfig,
    DatabaseConfig,
    DetectorConfig,
)

"""Config loader.

Responsibilities:
- Load YAML config (default config/import.yml)
- Validate against config_schema.json (shipped next to this module)
- Apply defaults (preview_rows=5, extensions=.csv/.xlsx/.xls, detector/cleaning defaults)
- Build the typed AnalyzerConfig domain model
"""

__all__ = [
    "ConfigError",
    "SCHEMA_PATH",
    "load_config",
    "config_from_dict",
]

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against JSON schema.

    Raises:
        ConfigError: If the schema file is missing or not valid JSON, or if
            the config data fails schema validation (missing required keys,
            wrong types, unknown keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def config_from_dict(data: dict[str, Any]) -> AnalyzerConfig:
    """Build AnalyzerConfig from already-validated data, applying defaults."""
    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    det_raw = data.get("detector") or {}
    defaults = DetectorConfig()
    detector = DetectorConfig(
        enabled=det_raw.get("enabled", defaults.enabled),
        model=det_raw.get("model", defaults.model),
        timeout_seconds=float(det_raw.get("timeout_seconds", defaults.timeout_seconds)),
        classify_before_detect=det_raw.get("classify_before_detect", defaults.classify_before_detect),
        summarize=det_raw.get("summarize", defaults.summarize),
    )
    clean_raw = data.get("cleaning") or {}
    cleaning = CleaningConfig(
        sparse_max_other_fields=clean_raw.get(
            "sparse_max_other_fields", CleaningConfig().sparse_max_other_fields
        ),
    )
    # 拡張子は小文字で比較する
    extensions = tuple(e.lower() for e in data.get("extensions", DEFAULT_EXTENSIONS))
    return AnalyzerConfig(
        source_directory=data["source_directory"],
        database=db,
        preview_rows=data.get("preview_rows", 5),
        extensions=extensions,
        user_id=data.get("user_id", 0),
        detector=detector,
        cleaning=cleaning,
    )


def load_config(path: Path) -> AnalyzerConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("config validation failed: top-level mapping required")

    _validate_config_schema(data)
    return config_from_dict(data)
