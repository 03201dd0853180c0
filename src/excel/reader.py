from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import chardet
import pandas as pd

from src.models.errors import FormatError, HeaderDetectionError
from src.models.row_data import RowData

"""Tabular reader: raw upload bytes -> grid of text cells.

- .csv: UTF-8 (BOM tolerated), chardet fallback, ragged rows allowed
- .xlsx/.xls: pandas ExcelFile, first sheet only, read without header
- Grid rows keep their original order; trailing empty cells are trimmed so
  rows may have differing lengths

normalize_grid() applies a detected header row and builds the RowData records
(rows strictly after the header) consumed by the cleaning pipeline.
"""

__all__ = [
    "Grid",
    "SUPPORTED_EXTENSIONS",
    "SheetData",
    "read_grid",
    "read_grid_file",
    "preview_rows",
    "normalize_headers",
    "normalize_grid",
]

Grid = list[list[str]]

SUPPORTED_EXTENSIONS: tuple[str, ...] = (".csv", ".xlsx", ".xls")
UNSUPPORTED_MESSAGE = "unsupported file type; use .csv or .xlsx/.xls"


@dataclass
class SheetData:
    header_row_index: int
    headers: list[str]
    rows: list[RowData]  # 正規化済 (ヘッダ名→セル文字列)


def read_grid(content: bytes, extension: str) -> Grid:
    """Read raw upload bytes into a grid of strings.

    Parameters
    ----------
    content: アップロードされたファイルの生バイト
    extension: ".csv" / ".xlsx" / ".xls" (先頭ドット省略可, 大文字小文字無視)

    Raises
    ------
    FormatError: unsupported extension or unreadable content
    """
    ext = extension.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    if ext not in SUPPORTED_EXTENSIONS:
        raise FormatError(UNSUPPORTED_MESSAGE)
    if ext == ".csv":
        return _read_delimited(content)
    return _read_spreadsheet(content)


def read_grid_file(path: Path) -> Grid:
    try:
        content = path.read_bytes()
    except OSError as e:
        raise FormatError(f"failed to read file: {e}") from e
    return read_grid(content, path.suffix)


def preview_rows(grid: Grid, n: int = 5) -> Grid:
    """First ``n`` rows of the grid (copied; the grid itself is never mutated)."""
    return [list(r) for r in grid[:n]]


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    detected = chardet.detect(content).get("encoding")
    if detected:
        try:
            return content.decode(detected)
        except (LookupError, UnicodeDecodeError):
            pass
    # latin-1 はどのバイト列でも復号できる
    return content.decode("latin-1")


def _read_delimited(content: bytes) -> Grid:
    text = _decode_text(content).replace("\x00", "")
    try:
        # 空行はスキップ (行番号はデータ行のみで数える)
        return [list(row) for row in csv.reader(io.StringIO(text, newline="")) if row]
    except csv.Error as e:
        raise FormatError(f"malformed delimited text: {e}") from e


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if pd.isna(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        # Excel の整数セルは float で読まれるため "100.0" ではなく "100"
        return str(int(value))
    return str(value)


def _read_spreadsheet(content: bytes) -> Grid:
    try:
        xls = pd.ExcelFile(io.BytesIO(content))
    except Exception as e:
        raise FormatError(f"unreadable spreadsheet: {e}") from e
    if not xls.sheet_names:
        return []
    try:
        # keep_default_na=False: "NA" / "null" 等の文字列をそのまま残す
        df = xls.parse(xls.sheet_names[0], header=None, dtype=object, keep_default_na=False)
    except Exception as e:
        raise FormatError(f"unreadable spreadsheet: {e}") from e

    grid: Grid = []
    for raw in df.itertuples(index=False, name=None):
        cells = [_cell_text(v) for v in raw]
        while cells and cells[-1].strip() == "":
            cells.pop()
        grid.append(cells)
    return grid


def normalize_headers(grid: Grid, header_row_index: int) -> list[str]:
    """Header names from the given row; empty cells become ``Col{i}`` placeholders."""
    if header_row_index < 0 or header_row_index >= len(grid):
        return []
    headers: list[str] = []
    for i, v in enumerate(grid[header_row_index]):
        t = v.strip()
        headers.append(t if t else f"Col{i}")
    return headers


def normalize_grid(grid: Grid, header_row_index: int) -> SheetData:
    """Apply the detected header row and build records for every later row.

    Steps:
    1. Validate the header row index addresses a row of the grid
    2. Build headers (placeholders for empty cells)
    3. Rows after the header become RowData; short rows are padded with ""
       and cells beyond the header width are ignored
    """
    if header_row_index < 0 or header_row_index >= len(grid):
        raise HeaderDetectionError("could not detect header row", header_row_index)
    headers = normalize_headers(grid, header_row_index)
    if not headers:
        raise HeaderDetectionError("empty header row", header_row_index)

    rows: list[RowData] = []
    for idx, raw in enumerate(grid[header_row_index + 1:]):
        values: dict[str, str] = {}
        for j, col in enumerate(headers):
            values[col] = raw[j].strip() if j < len(raw) else ""
        rows.append(RowData(index=idx, values=values, header_row_index=header_row_index))
    return SheetData(header_row_index=header_row_index, headers=headers, rows=rows)
