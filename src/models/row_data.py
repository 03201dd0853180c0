from __future__ import annotations

from dataclasses import dataclass

"""RowData model for the sales export analyzer.

RowData represents a single data row after the header row has been resolved.
Rows are addressed by a stable index so that every cleaning stage can report
exactly which rows it removed.
"""

__all__ = [
    "RowData",
]


@dataclass(frozen=True)
class RowData:
    """Logical representation of a single data row (one Record).

    ``index`` is the position among the rows strictly after the header row
    (0 = first data row). It never changes while the row travels through the
    cleaning stages.
    """
    index: int  # Stable record index (0 = first row after header)
    values: dict[str, str]  # Header name -> trimmed cell text
    header_row_index: int = 0  # Grid row index of the header this row was built from

    @property
    def grid_row(self) -> int:
        """Row index inside the original grid (0-based)."""
        return self.header_row_index + 1 + self.index

    def get(self, column: str) -> str:
        # 欠落列は空文字扱い
        return self.values.get(column, "")
