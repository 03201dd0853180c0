from __future__ import annotations

import logging
from typing import Any

from src.models.column_mapping import ColumnMapping

"""Per-user mapping cache keyed by preview signature.

Two implementations share the same get/upsert interface:

- PostgresMappingCache: column_mappings table via a psycopg2 cursor.
  upsert は INSERT ... ON CONFLICT (user_id, signature) DO UPDATE で原子的に
  実行するため、同一キーへの同時 upsert は last-writer-wins となる。
- InMemoryMappingCache: process-local dict, used in mock mode and tests.

The cache is injected into the detector; its lifecycle (connection,
transaction) belongs to the caller.
"""

__all__ = [
    "MappingCacheError",
    "MappingCache",
    "InMemoryMappingCache",
    "PostgresMappingCache",
]

logger = logging.getLogger(__name__)


class MappingCacheError(Exception):
    pass


class MappingCache:
    """Interface for mapping caches."""

    def get(self, user_id: int, signature: str) -> ColumnMapping | None:
        raise NotImplementedError

    def upsert(self, user_id: int, signature: str, mapping: ColumnMapping) -> None:
        raise NotImplementedError


class InMemoryMappingCache(MappingCache):
    def __init__(self) -> None:
        self._store: dict[tuple[int, str], ColumnMapping] = {}

    def get(self, user_id: int, signature: str) -> ColumnMapping | None:
        return self._store.get((user_id, signature))

    def upsert(self, user_id: int, signature: str, mapping: ColumnMapping) -> None:
        self._store[(user_id, signature)] = mapping

    def __len__(self) -> int:  # pragma: no cover (trivial)
        return len(self._store)


SELECT_SQL = (
    "SELECT header_row, sales_column, bill_column FROM column_mappings "
    "WHERE user_id = %s AND signature = %s"
)

UPSERT_SQL = (
    "INSERT INTO column_mappings (user_id, signature, header_row, sales_column, bill_column) "
    "VALUES (%s, %s, %s, %s, %s) "
    "ON CONFLICT (user_id, signature) DO UPDATE SET "
    "header_row = EXCLUDED.header_row, "
    "sales_column = EXCLUDED.sales_column, "
    "bill_column = EXCLUDED.bill_column"
)

SAVEPOINT_SQL = "SAVEPOINT mapping_cache"
ROLLBACK_TO_SAVEPOINT_SQL = "ROLLBACK TO SAVEPOINT mapping_cache"
RELEASE_SAVEPOINT_SQL = "RELEASE SAVEPOINT mapping_cache"


class PostgresMappingCache(MappingCache):
    """column_mappings backed cache.

    Parameters
    ----------
    cursor: psycopg2 cursor (トランザクション境界は呼び出し側が管理)

    Every statement runs inside ``SAVEPOINT mapping_cache``; a failed lookup or
    upsert is rolled back to the savepoint and the caller's transaction stays
    usable.
    """

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    def _execute(self, sql: str, params: tuple, fetch: bool = False) -> Any:
        cur = self._cursor
        cur.execute(SAVEPOINT_SQL)
        try:
            cur.execute(sql, params)
            row = cur.fetchone() if fetch else None
        except Exception:
            # 失敗した文だけを取り消し、外側のファイル単位トランザクションは継続
            cur.execute(ROLLBACK_TO_SAVEPOINT_SQL)
            raise
        cur.execute(RELEASE_SAVEPOINT_SQL)
        return row

    def get(self, user_id: int, signature: str) -> ColumnMapping | None:
        try:
            row = self._execute(SELECT_SQL, (user_id, signature), fetch=True)
        except Exception as e:
            raise MappingCacheError(f"mapping lookup failed: {e}") from e
        if row is None:
            return None
        header_row, sales_column, bill_column = row[0], row[1], row[2]
        logger.debug("mapping cache hit user_id=%s signature=%s", user_id, signature[:12])
        return ColumnMapping(
            header_row_index=int(header_row),
            sales_column=sales_column,
            bill_column=bill_column,
        )

    def upsert(self, user_id: int, signature: str, mapping: ColumnMapping) -> None:
        try:
            self._execute(
                UPSERT_SQL,
                (
                    user_id,
                    signature,
                    mapping.header_row_index,
                    mapping.sales_column,
                    mapping.bill_column,
                ),
            )
        except Exception as e:
            raise MappingCacheError(f"mapping upsert failed: {e}") from e
