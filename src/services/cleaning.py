from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from ..models.analysis_result import CleaningReport
from ..models.row_data import RowData
from .aggregator import is_number, to_numeric

"""Row-cleaning pipeline.

Stages run in a fixed order; a row dropped by one stage never reaches the
next one:

1. drop_blank_rows            - every field empty after trim
2. drop_totalish_second_column - headers[1] の値が "total" 系ラベル
3. filter_summary_rows        - any totalish cell, or the sparse subtotal trigger
4. restrict_to_usable_bills   - bill identifier must not be effectively empty

Each stage takes the survivors of the previous one and returns a StageResult
(kept rows + removed original indices). Input lists are never mutated, so each
stage can be tested in isolation and the removed sets feed the diagnostics.
"""

__all__ = [
    "EMPTY_BILL_TOKENS",
    "TOTAL_PATTERN",
    "StageResult",
    "looks_like_total",
    "is_effectively_empty",
    "drop_blank_rows",
    "drop_totalish_second_column",
    "filter_summary_rows",
    "restrict_to_usable_bills",
    "clean_rows",
]

logger = logging.getLogger(__name__)

EMPTY_BILL_TOKENS = frozenset({"", "-", "na", "n/a", "none", "null", "nil", "nan", "0"})

# sub total / grand total / grand subtotal / total(s) (単語境界つき)
TOTAL_PATTERN = re.compile(r"\b(?:(?:grand\s*)?sub\s*|grand\s*)?totals?\b", re.IGNORECASE)

_TOTAL_WORD = "total"
_TYPO_MAX_DISTANCE = 1  # "Totl" / "Toal" 程度のタイプミス


@dataclass(frozen=True)
class StageResult:
    kept: list[RowData]
    removed: frozenset[int]  # RowData.index of dropped rows


def looks_like_total(cell: str) -> bool:
    """True when the cell reads like a subtotal / grand-total label.

    Matches the total word pattern, or anything within edit distance 1 of
    "total" (typos such as "Totl" or "Toal"). Empty cells never match.
    """
    t = cell.strip().lower()
    if not t:
        return False
    if TOTAL_PATTERN.search(t):
        return True
    # score_cutoff 超過時は cutoff+1 が返る
    return Levenshtein.distance(t, _TOTAL_WORD, score_cutoff=_TYPO_MAX_DISTANCE) <= _TYPO_MAX_DISTANCE


def is_effectively_empty(value: str) -> bool:
    """Bill identifier placeholders ("", "-", "NA", "null", "0", ...) count as absent."""
    return value.strip().lower() in EMPTY_BILL_TOKENS


def drop_blank_rows(rows: Sequence[RowData]) -> StageResult:
    kept: list[RowData] = []
    removed: set[int] = set()
    for r in rows:
        if any(v.strip() for v in r.values.values()):
            kept.append(r)
        else:
            removed.add(r.index)
    return StageResult(kept=kept, removed=frozenset(removed))


def drop_totalish_second_column(rows: Sequence[RowData], headers: Sequence[str]) -> StageResult:
    """Drop rows whose second column holds a total label.

    Only applies when at least two headers exist.
    """
    if len(headers) < 2:
        return StageResult(kept=list(rows), removed=frozenset())
    second = headers[1]
    kept: list[RowData] = []
    removed: set[int] = set()
    for r in rows:
        if looks_like_total(r.get(second)):
            removed.add(r.index)
        else:
            kept.append(r)
    return StageResult(kept=kept, removed=frozenset(removed))


def _is_sparse_summary(row: RowData, bill_col: str, sales_col: str, max_other_fields: int) -> bool:
    if not is_effectively_empty(row.get(bill_col)):
        return False
    if not is_number(to_numeric(row.get(sales_col))):
        return False
    other = 0
    for col, v in row.values.items():
        if col == sales_col:
            continue
        t = v.strip()
        # bill 列自身 ("NA" 等) も数に含める
        if t and t.lower() != "nan":
            other += 1
    return other <= max_other_fields


def filter_summary_rows(
    rows: Sequence[RowData],
    bill_col: str,
    sales_col: str,
    max_other_fields: int = 1,
) -> StageResult:
    """Drop summary rows.

    Two independent triggers:
    - any cell in the row looks like a total
    - sparse: no usable bill id, numeric sales value, and at most
      ``max_other_fields`` other non-empty fields (excluding the sales field)
    """
    kept: list[RowData] = []
    removed: set[int] = set()
    for r in rows:
        if any(looks_like_total(v) for v in r.values.values()):
            removed.add(r.index)
            continue
        if _is_sparse_summary(r, bill_col, sales_col, max_other_fields):
            removed.add(r.index)
            continue
        kept.append(r)
    return StageResult(kept=kept, removed=frozenset(removed))


def restrict_to_usable_bills(rows: Sequence[RowData], bill_col: str) -> StageResult:
    kept: list[RowData] = []
    removed: set[int] = set()
    for r in rows:
        if is_effectively_empty(r.get(bill_col)):
            removed.add(r.index)
        else:
            kept.append(r)
    return StageResult(kept=kept, removed=frozenset(removed))


def clean_rows(
    rows: Sequence[RowData],
    headers: Sequence[str],
    sales_col: str,
    bill_col: str,
    sparse_max_other_fields: int = 1,
) -> tuple[list[RowData], CleaningReport]:
    """Run all four stages in order and return the surviving rows + report."""
    blank = drop_blank_rows(rows)
    second = drop_totalish_second_column(blank.kept, headers)
    summary = filter_summary_rows(second.kept, bill_col, sales_col, sparse_max_other_fields)
    usable = restrict_to_usable_bills(summary.kept, bill_col)

    report = CleaningReport(
        total_rows=len(rows),
        removed_blank=blank.removed,
        removed_totalish=second.removed,
        removed_summary=summary.removed,
        removed_unusable_bill=usable.removed,
        kept=tuple(r.index for r in usable.kept),
    )
    logger.debug(
        "cleaning rows=%d blank=%d totalish=%d summary=%d unusable_bill=%d final=%d",
        len(rows),
        report.dropped_blank_rows,
        report.dropped_totalish_rows,
        report.dropped_summary_rows,
        len(usable.removed),
        report.final_rows_used,
    )
    return usable.kept, report
