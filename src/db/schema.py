from __future__ import annotations

from typing import Any

"""DDL for the tables owned by the analyzer.

- sales_metrics: one row per analyzed upload (or text ingestion)
- column_mappings: mapping cache, unique per (user_id, signature)
"""

__all__ = [
    "SCHEMA_STATEMENTS",
    "ensure_schema",
]

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS sales_metrics (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        source_type TEXT NOT NULL,
        payload JSONB NOT NULL,
        total_sales NUMERIC,
        bill_row_count INT,
        unique_bill_count INT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )""",
    "CREATE INDEX IF NOT EXISTS sales_metrics_user_id_idx ON sales_metrics(user_id, created_at DESC)",
    """CREATE TABLE IF NOT EXISTS column_mappings (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        signature TEXT NOT NULL,
        header_row INT NOT NULL,
        sales_column TEXT NOT NULL,
        bill_column TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE(user_id, signature)
    )""",
)


def ensure_schema(cursor: Any) -> None:
    """Create the analyzer tables if they do not exist (idempotent)."""
    for stmt in SCHEMA_STATEMENTS:
        cursor.execute(stmt)
