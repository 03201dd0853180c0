# Shared pytest fixtures
from __future__ import annotations
import tempfile
from collections.abc import Callable
from pathlib import Path

import pandas as pd
import pytest

from src.logging.init import reset_logging


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # DB / model 接続はテストでは行わない
    monkeypatch.setenv("DISABLE_DB_CONNECT", "1")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    for name in ("DATABASE_URL", "PGDSN", "SUPPRESS_DB_WARNING"):
        monkeypatch.delenv(name, raising=False)
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """source_directory: ./data
preview_rows: 5
user_id: 7
detector:
  enabled: false
cleaning:
  sparse_max_other_fields: 1
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def basic_rows() -> list[list[str]]:
    # Date / Bill No / Amount の基本例 -> 300.00 / 2 / 2
    return [
        ["Date", "Bill No", "Amount"],
        ["1/1", "B1", "100"],
        ["1/2", "Total", "50"],
        ["1/3", "B2", "200"],
    ]


@pytest.fixture()
def messy_rows() -> list[list[str]]:
    # タイトル行・小計行・空行・NA 行を含む POS 形式 -> 1530.50 / 3 / 2
    return [
        ["Sales Register", "Outlet 1", "2024-04-01"],
        ["Period", "2024-03-01", "2024-03-31"],
        ["Date", "Bill No", "Item", "Qty", "Item Net Amt"],
        ["2024-03-01", "B1000", "Coffee", "2", "240.00"],
        ["2024-03-01", "B1000", "Muffin", "1", "90.50"],
        ["", "", "Sub Total", "", "330.50"],
        ["2024-03-02", "B1001", "Tea", "1", "₹1,200.00"],
        ["", "", "", "", ""],
        ["", "NA", "", "", "500"],
        ["", "Grand Total", "", "", "1530.50"],
    ]


def _csv_cell(value: object) -> str:
    text = str(value)
    if "," in text or '"' in text:
        return '"' + text.replace('"', '""') + '"'
    return text


@pytest.fixture()
def make_upload(temp_workdir: Path) -> Callable[[str, list[list[object]]], Path]:
    """Write rows under data/ as .csv or .xlsx depending on the file name."""

    def _make(name: str, rows: list[list[object]]) -> Path:
        path = temp_workdir / "data" / name
        if path.suffix.lower() == ".xlsx":
            with pd.ExcelWriter(path, engine="openpyxl") as writer:
                pd.DataFrame(rows).to_excel(writer, sheet_name="Sheet1", header=False, index=False)
        else:
            text = "\n".join(",".join(_csv_cell(c) for c in r) for r in rows) + "\n"
            path.write_text(text, encoding="utf-8")
        return path

    return _make
