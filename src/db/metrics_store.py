from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from src.models.analysis_result import SalesMetrics

"""sales_metrics persistence.

One INSERT per analyzed upload with RETURNING id. The payload column is JSONB
(psycopg2.extras.Json でアダプト). Connection / transaction boundaries are
managed by the caller (orchestrator が BEGIN/COMMIT を実行).
"""

__all__ = [
    "MetricsStoreError",
    "StoredMetrics",
    "insert_sales_metrics",
    "fetch_latest_metrics",
]

logger = logging.getLogger(__name__)

SOURCE_FILE = "file"
SOURCE_TEXT = "text"


class MetricsStoreError(Exception):
    pass


@dataclass(frozen=True)
class StoredMetrics:
    id: int
    source_type: str
    payload: dict[str, Any]
    metrics: SalesMetrics
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_type": self.source_type,
            "payload": self.payload,
            "metrics": self.metrics.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


INSERT_SQL = (
    "INSERT INTO sales_metrics "
    "(user_id, source_type, payload, total_sales, bill_row_count, unique_bill_count) "
    "VALUES (%s, %s, %s, %s, %s, %s) RETURNING id"
)

LATEST_SQL = (
    "SELECT id, source_type, payload, total_sales::float8, bill_row_count, unique_bill_count, created_at "
    "FROM sales_metrics WHERE user_id = %s ORDER BY created_at DESC LIMIT 1"
)


def insert_sales_metrics(
    cursor: Any,
    user_id: int,
    source_type: str,
    payload: dict[str, Any],
    metrics: SalesMetrics,
) -> int:
    """Insert one sales_metrics row and return its id.

    Parameters
    ----------
    cursor: psycopg2 cursor
    user_id: 所有ユーザー
    source_type: "file" (アップロード) または "text" (テキスト入力)
    payload: JSONB に保存する付帯情報 (file_name, headers など)
    metrics: 集計結果
    """
    if source_type not in (SOURCE_FILE, SOURCE_TEXT):
        raise MetricsStoreError(f"unknown source_type: {source_type}")

    start = time.perf_counter()
    try:
        cursor.execute(
            INSERT_SQL,
            (
                user_id,
                source_type,
                Json(payload),
                metrics.total_sales,
                metrics.bill_row_count,
                metrics.unique_bill_count,
            ),
        )
        row = cursor.fetchone()
    except Exception as e:
        raise MetricsStoreError(str(e)) from e
    finally:
        logger.debug("sales_metrics insert elapsed=%.4fs", time.perf_counter() - start)

    if not row:
        raise MetricsStoreError("insert returned no id")
    return int(row[0])


def fetch_latest_metrics(cursor: Any, user_id: int) -> StoredMetrics | None:
    """Most recent sales_metrics row of the user, or None."""
    try:
        cursor.execute(LATEST_SQL, (user_id,))
        row = cursor.fetchone()
    except Exception as e:
        raise MetricsStoreError(str(e)) from e
    if row is None:
        return None
    # psycopg2 は JSONB を dict にデコードして返す
    payload = row[2] if isinstance(row[2], dict) else {}
    return StoredMetrics(
        id=int(row[0]),
        source_type=row[1],
        payload=payload,
        metrics=SalesMetrics(
            total_sales=float(row[3] or 0.0),
            bill_row_count=int(row[4] or 0),
            unique_bill_count=int(row[5] or 0),
        ),
        created_at=row[6],
    )
