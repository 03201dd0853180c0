from __future__ import annotations

from dataclasses import dataclass

"""ColumnMapping model: a confirmed header row + target column pair.

Stored per (user_id, signature) by the mapping cache so that later uploads
with the same preview skip detection entirely.
"""

__all__ = [
    "ColumnMapping",
]


@dataclass(frozen=True)
class ColumnMapping:
    header_row_index: int  # 0-based grid row holding column names
    sales_column: str  # Header text of the revenue column
    bill_column: str  # Header text of the bill / invoice identifier column

    def is_complete(self) -> bool:
        """True when the mapping can be used as-is (non-negative row, both names present)."""
        return (
            self.header_row_index >= 0
            and bool(self.sales_column.strip())
            and bool(self.bill_column.strip())
        )
