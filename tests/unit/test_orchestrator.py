from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from src.db.mapping_cache import InMemoryMappingCache
from src.models.analysis_result import SalesMetrics
from src.models.column_mapping import ColumnMapping
from src.models.config_models import AnalyzerConfig, CleaningConfig, DatabaseConfig, DetectorConfig
from src.models.errors import ColumnMatchError, HeaderDetectionError, NotSalesDataError
from src.models.upload_file import FileStatus
from src.services.detector import STRATEGY_CACHE, STRATEGY_HEURISTIC, HeaderColumnDetector
from src.services.model_assist import AssistError
from src.services.orchestrator import (
    ProcessingError,
    analyze_grid,
    analyze_upload,
    process_all,
    process_file,
    scan_upload_files,
)
from src.logging.error_log import ErrorLogBuffer
from src.services.signature import signature_for_preview


def _config(**kw) -> AnalyzerConfig:
    db = DatabaseConfig(host=None, port=None, user=None, password=None, database=None, dsn=None)
    base = dict(source_directory="./data", database=db, detector=DetectorConfig(enabled=False))
    base.update(kw)
    return AnalyzerConfig(**base)


class TestAnalyzeGrid:
    def test_basic_example(self, basic_rows):
        cache = InMemoryMappingCache()
        result = analyze_grid(basic_rows, "basic.csv", 1, HeaderColumnDetector(cache=cache), _config())
        assert result.metrics.total_sales == 300.0
        assert result.metrics.bill_row_count == 2
        assert result.metrics.unique_bill_count == 2
        assert result.sales_column == "Amount"
        assert result.bill_column == "Bill No"
        assert result.cleaning.dropped_totalish_rows == 1
        assert result.detection.strategy == STRATEGY_HEURISTIC
        assert result.summary == "Total sales = 300.00, bill rows = 2, unique bill IDs = 2."
        # 成功後にキャッシュへ保存
        sig = signature_for_preview(basic_rows[:5])
        assert cache.get(1, sig) == ColumnMapping(0, "Amount", "Bill No")

    def test_messy_export(self, messy_rows):
        result = analyze_grid(messy_rows, "messy.csv", 1, HeaderColumnDetector(cache=InMemoryMappingCache()), _config())
        assert result.detection.mapping.header_row_index == 2
        assert result.metrics.total_sales == 1530.5
        assert result.metrics.bill_row_count == 3
        assert result.metrics.unique_bill_count == 2
        diag = result.diagnostics()
        assert diag["dropped_blank_rows"] == 1
        assert diag["dropped_totalish_rows"] == 1
        assert diag["dropped_summary_rows"] == 2
        assert diag["final_rows_used"] == 3
        assert diag["used_external_assist"] is False

    def test_second_upload_uses_cache(self, basic_rows):
        detector = HeaderColumnDetector(cache=InMemoryMappingCache())
        analyze_grid(basic_rows, "a.csv", 1, detector, _config())
        again = analyze_grid(basic_rows, "b.csv", 1, detector, _config())
        assert again.detection.strategy == STRATEGY_CACHE
        assert again.detection.diagnostic_message == "cache"
        assert again.metrics.total_sales == 300.0

    def test_model_names_resolved_against_headers(self, basic_rows):
        assist = MagicMock()
        assist.detect_header.return_value = '{"header_row_index": 0, "sales_column": "amount", "bill_column": "bill"}'
        cache = InMemoryMappingCache()
        result = analyze_grid(basic_rows, "a.csv", 1, HeaderColumnDetector(cache=cache, assist=assist), _config(), assist)
        assert result.detection.used_external_assist is True
        assert result.sales_column == "Amount"
        assert result.bill_column == "Bill No"
        # キャッシュには解決済みのヘッダ名を保存
        sig = signature_for_preview(basic_rows[:5])
        assert cache.get(1, sig).bill_column == "Bill No"

    def test_column_match_error_payload(self):
        grid = [["Date", "Item"], ["1/1", "Tea"]]
        with pytest.raises(ColumnMatchError) as ei:
            analyze_grid(grid, "x.csv", 1, HeaderColumnDetector(), _config())
        payload = ei.value.to_payload()
        assert payload["headers"] == ["Date", "Item"]
        assert payload["sales_detected"] == ""
        assert payload["bill_detected"] == ""
        assert payload["error"] == "could not match detected columns"

    def test_empty_grid(self):
        with pytest.raises(HeaderDetectionError, match="could not detect header row"):
            analyze_grid([], "empty.csv", 1, HeaderColumnDetector(), _config())

    def test_screening_rejects_non_sales(self, basic_rows):
        assist = MagicMock()
        assist.classify_sales.return_value = (False, 0.92)
        cfg = _config(detector=DetectorConfig(classify_before_detect=True))
        with pytest.raises(NotSalesDataError) as ei:
            analyze_grid(basic_rows, "a.csv", 1, HeaderColumnDetector(assist=assist), cfg, assist)
        assert ei.value.confidence == 0.92
        assist.detect_header.assert_not_called()

    def test_screening_failure_is_ignored(self, basic_rows):
        assist = MagicMock()
        assist.classify_sales.side_effect = AssistError("timeout")
        assist.detect_header.side_effect = AssistError("timeout")
        cfg = _config(detector=DetectorConfig(classify_before_detect=True))
        result = analyze_grid(basic_rows, "a.csv", 1, HeaderColumnDetector(assist=assist), cfg, assist)
        assert result.metrics.total_sales == 300.0

    def test_model_summary_with_fallback(self, basic_rows):
        assist = MagicMock()
        assist.detect_header.side_effect = AssistError("down")
        assist.summarize.return_value = ""
        cfg = _config(detector=DetectorConfig(summarize=True))
        result = analyze_grid(basic_rows, "a.csv", 1, HeaderColumnDetector(assist=assist), cfg, assist)
        assert result.summary.startswith("Total sales = 300.00")
        assist.summarize.return_value = "Sales reached 300.00 over two bills."
        result = analyze_grid(basic_rows, "a.csv", 1, HeaderColumnDetector(assist=assist), cfg, assist)
        assert result.summary == "Sales reached 300.00 over two bills."

    def test_sparse_threshold_from_config(self):
        grid = [["Date", "Bill", "Item", "Amount"], ["1/1", "B1", "Tea", "10"], ["1/1", "-", "Tip", "5"]]
        loose = analyze_grid(grid, "a.csv", 1, HeaderColumnDetector(), _config(cleaning=CleaningConfig(sparse_max_other_fields=3)))
        assert loose.cleaning.dropped_summary_rows == 1
        strict = analyze_grid(grid, "a.csv", 1, HeaderColumnDetector(), _config())
        assert strict.cleaning.dropped_summary_rows == 0
        assert strict.metrics == loose.metrics

    def test_to_dict_layout(self, basic_rows):
        result = analyze_grid(basic_rows, "basic.csv", 1, HeaderColumnDetector(), _config())
        out = result.to_dict()
        assert set(out) == {"summary", "metrics", "meta", "cleaning"}
        assert out["meta"]["header_row"] == 0
        assert out["meta"]["ai_used"] is False
        assert out["cleaning"]["dropped_totalish_second_col"] == 1
        json.dumps(out)


def test_analyze_upload_reads_bytes():
    content = b"Date,Bill No,Amount\n1/1,B1,100\n1/2,Total,50\n1/3,B2,200\n"
    result = analyze_upload(content, "upload.csv", 1, HeaderColumnDetector(), _config())
    assert result.metrics.total_sales == 300.0


def test_scan_upload_files(temp_workdir: Path):
    data = temp_workdir / "data"
    for name in ("b.csv", "a.XLSX", "notes.txt", "c.xls"):
        (data / name).write_bytes(b"")
    (data / "sub").mkdir()
    found = scan_upload_files(data, (".csv", ".xlsx", ".xls"))
    assert [p.name for p in found] == ["a.XLSX", "b.csv", "c.xls"]


def test_scan_upload_files_missing_directory(temp_workdir: Path):
    with pytest.raises(ProcessingError, match="Directory not found"):
        scan_upload_files(temp_workdir / "nope", (".csv",))


class TestProcessFile:
    def test_live_mode_commits_and_inserts(self, make_upload, basic_rows):
        path = make_upload("basic.csv", basic_rows)
        cursor = MagicMock()
        cursor.fetchone.return_value = None
        insert = MagicMock(return_value=11)
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("src.services.orchestrator.insert_sales_metrics", insert)
            up = process_file(path, _config(), HeaderColumnDetector(), ErrorLogBuffer(), cursor=cursor)
        assert up.status == FileStatus.SUCCESS
        assert up.metrics_id == 11
        executed = [c[0][0] for c in cursor.execute.call_args_list]
        assert executed == ["BEGIN", "COMMIT"]
        args = insert.call_args[0]
        assert args[2] == "file"
        assert args[3] == {"file_name": "basic.csv", "headers": ["Date", "Bill No", "Amount"]}

    def test_failure_rolls_back_and_logs(self, make_upload):
        path = make_upload("bad.csv", [["Date", "Item"], ["1/1", "Tea"]])
        cursor = MagicMock()
        log = ErrorLogBuffer()
        up = process_file(path, _config(), HeaderColumnDetector(), log, cursor=cursor)
        assert up.status == FileStatus.FAILED
        assert up.error_type == "COLUMN_MATCH_ERROR"
        executed = [c[0][0] for c in cursor.execute.call_args_list]
        assert executed == ["BEGIN", "ROLLBACK"]
        rec = log.records[0]
        assert rec.stage == "match"
        assert rec.row == -1
        assert "headers=['Date', 'Item']" in rec.message

    def test_insert_failure_is_database_error(self, make_upload, basic_rows):
        path = make_upload("basic.csv", basic_rows)
        cursor = MagicMock()
        cursor.fetchone.return_value = None  # RETURNING id が返らない
        log = ErrorLogBuffer()
        up = process_file(path, _config(), HeaderColumnDetector(), log, cursor=cursor)
        assert up.status == FileStatus.FAILED
        assert up.error_type == "DATABASE_INSERT_ERROR"
        assert log.records[0].stage == "persist"

    def test_begin_failure(self, make_upload, basic_rows):
        path = make_upload("basic.csv", basic_rows)
        cursor = MagicMock()
        cursor.execute.side_effect = RuntimeError("connection closed")
        log = ErrorLogBuffer()
        up = process_file(path, _config(), HeaderColumnDetector(), log, cursor=cursor)
        assert up.error_type == "TRANSACTION_BEGIN_ERROR"
        assert log.records[0].stage == "transaction"

    def test_unsupported_file(self, make_upload):
        path = make_upload("notes.txt", [["hello"]])
        log = ErrorLogBuffer()
        up = process_file(path, _config(), HeaderColumnDetector(), log)
        assert up.error_type == "FORMAT_ERROR"
        assert log.records[0].stage == "read"


class TestProcessAll:
    def test_mock_mode_aggregates(self, make_upload, basic_rows, messy_rows):
        make_upload("basic.csv", basic_rows)
        make_upload("messy.xlsx", messy_rows)
        make_upload("broken.csv", [["Date", "Item"], ["1/1", "Tea"]])
        result = process_all(_config())
        assert result.total_files == 3
        assert result.success_files == 2
        assert result.failed_files == 1
        assert result.total_bill_rows == 5
        assert result.total_unique_bills == 4
        assert result.total_sales == 1830.5
        stats = {s.file_name: s for s in result.file_stats}
        assert stats["broken.csv"].error_type == "COLUMN_MATCH_ERROR"
        assert stats["basic.csv"].strategy == STRATEGY_HEURISTIC
        assert len(result.uploads) == 3
        logs = list((Path("logs")).glob("errors-*.log"))
        assert len(logs) == 1
        assert json.loads(logs[0].read_text(encoding="utf-8").splitlines()[0])["file"] == "broken.csv"

    def test_explicit_files(self, make_upload, basic_rows):
        path = make_upload("basic.csv", basic_rows)
        make_upload("other.csv", [["x"]])
        result = process_all(_config(), files=[path])
        assert result.total_files == 1
        assert result.success_files == 1

    def test_shared_cache_across_files(self, make_upload, basic_rows):
        make_upload("jan.csv", basic_rows)
        make_upload("feb.csv", basic_rows)
        cache = InMemoryMappingCache()
        result = process_all(_config(), cache=cache)
        strategies = [s.strategy for s in result.file_stats]
        assert strategies == [STRATEGY_HEURISTIC, STRATEGY_CACHE]

    def test_user_id_override(self, make_upload, basic_rows):
        make_upload("jan.csv", basic_rows)
        cache = InMemoryMappingCache()
        process_all(_config(user_id=3), cache=cache, user_id=9)
        sig = signature_for_preview(basic_rows[:5])
        assert cache.get(9, sig) is not None
        assert cache.get(3, sig) is None

    def test_no_files(self, temp_workdir: Path):
        result = process_all(_config())
        assert result.total_files == 0
        assert not list((temp_workdir / "logs").glob("errors-*.log"))


class AbortingCursor:
    """PostgreSQL 風カーソル: 失敗した文の後はトランザクションが aborted になる."""

    def __init__(self):
        self.executed: list[str] = []
        self.aborted = False
        self._result = None
        self.mappings: list[tuple] = []

    def execute(self, sql, params=None):
        self.executed.append(sql)
        if sql in ("ROLLBACK", "ROLLBACK TO SAVEPOINT mapping_cache"):
            self.aborted = False
            return
        if self.aborted:
            raise RuntimeError("current transaction is aborted, commands ignored until end of transaction block")
        if sql.startswith("SELECT") and "column_mappings" in sql:
            self.aborted = True
            raise RuntimeError('relation "column_mappings" does not exist')
        if sql.startswith("INSERT INTO column_mappings"):
            self.mappings.append(params)
        elif sql.startswith("INSERT INTO sales_metrics"):
            self._result = (1,)

    def fetchone(self):
        return self._result


def test_cache_lookup_failure_keeps_file_transaction(make_upload, basic_rows):
    path = make_upload("a.csv", basic_rows)
    cur = AbortingCursor()
    result = process_all(_config(), files=[path], cursor=cur)
    assert result.success_files == 1
    assert result.failed_files == 0
    up = result.uploads[0]
    assert up.metrics_id == 1
    assert up.result.detection.strategy == STRATEGY_HEURISTIC
    assert "ROLLBACK TO SAVEPOINT mapping_cache" in cur.executed
    assert cur.executed[-1] == "COMMIT"
    # ヒューリスティック結果はキャッシュへ保存される
    assert cur.mappings[0][2:] == (0, "Amount", "Bill No")
    assert not list(Path("logs").glob("errors-*.log"))


def test_batch_total_rounds_half_away_from_zero(make_upload, basic_rows, monkeypatch):
    make_upload("a.csv", basic_rows)
    monkeypatch.setattr(
        "src.services.orchestrator.compute_metrics",
        lambda rows, sales_col, bill_col: SalesMetrics(total_sales=0.125, bill_row_count=1, unique_bill_count=1),
    )
    result = process_all(_config())
    # 組み込み round (偶数丸め) なら 0.12
    assert result.total_sales == 0.13


def test_uploads_end_in_terminal_status(make_upload, basic_rows):
    make_upload("basic.csv", basic_rows)
    make_upload("broken.csv", [["Date", "Item"], ["1/1", "Tea"]])
    result = process_all(_config())
    assert {s.value for s in FileStatus} == {"success", "failed"}
    assert sorted(u.status.value for u in result.uploads) == ["failed", "success"]
    ok = next(u for u in result.uploads if u.status == FileStatus.SUCCESS)
    assert not hasattr(ok.result, "extra")
    assert ok.elapsed_seconds >= 0.0
