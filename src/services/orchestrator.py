from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..db.mapping_cache import InMemoryMappingCache, MappingCache, PostgresMappingCache
from ..db.metrics_store import SOURCE_FILE, MetricsStoreError, insert_sales_metrics
from ..excel.reader import Grid, normalize_grid, preview_rows, read_grid, read_grid_file
from ..logging.error_log import ErrorLogBuffer, ErrorRecord
from ..models.analysis_result import AnalysisResult
from ..models.column_mapping import ColumnMapping
from ..models.config_models import AnalyzerConfig
from ..models.errors import (
    AnalysisError,
    ColumnMatchError,
    FormatError,
    HeaderDetectionError,
    NotSalesDataError,
)
from ..models.processing_result import FileStat, ProcessingResult
from ..models.upload_file import FileStatus, UploadFile
from .aggregator import compute_metrics, round2
from .cleaning import clean_rows
from .column_matcher import find_column
from .detector import HeaderColumnDetector
from .model_assist import AssistError, ModelAssist
from .progress import ProgressTracker
from .signature import signature_for_preview
from .summary import simple_summary

"""Service orchestration for the sales export analyzer.

analyze_grid() runs the per-upload pipeline:

    preview -> signature -> (screening) -> detector cascade -> column matching
    -> record building -> cleaning -> aggregation -> mapping cache upsert

process_all() runs it over a batch of files (directory scan or explicit list),
each file in its own transaction when a live DB cursor is given, and returns
aggregated ProcessingResult for the SUMMARY line.
"""

__all__ = [
    "ProcessingError",
    "analyze_grid",
    "analyze_upload",
    "scan_upload_files",
    "process_file",
    "process_all",
]

logger = logging.getLogger(__name__)

_ERROR_STAGES: dict[type[Exception], str] = {
    FormatError: "read",
    NotSalesDataError: "classify",
    HeaderDetectionError: "detect",
    ColumnMatchError: "match",
    MetricsStoreError: "persist",
}


class ProcessingError(Exception):
    """Fatal batch-level error (bad directory etc.)."""
    pass


def _screen_sales_like(assist: ModelAssist, preview: Grid) -> None:
    try:
        is_sales, confidence = assist.classify_sales(preview)
    except AssistError as e:
        # 分類失敗は無視して通常の検出へ進む
        logger.debug("sales-like screening skipped: %s", e)
        return
    if not is_sales:
        raise NotSalesDataError(confidence)


def _summarize(config: AnalyzerConfig, assist: ModelAssist | None, result: AnalysisResult) -> str:
    if config.detector.summarize and assist is not None:
        try:
            text = assist.summarize(result.metrics)
        except AssistError as e:
            logger.debug("model summary failed: %s", e)
            text = ""
        if text:
            return text
    return simple_summary(result.metrics)


def analyze_grid(
    grid: Grid,
    file_name: str,
    user_id: int,
    detector: HeaderColumnDetector,
    config: AnalyzerConfig,
    assist: ModelAssist | None = None,
) -> AnalysisResult:
    """Detect, clean and aggregate one grid.

    Raises:
        NotSalesDataError: screening enabled and the model says "not sales"
        HeaderDetectionError: no usable header row
        ColumnMatchError: detected names do not match real headers
    """
    preview = preview_rows(grid, config.preview_rows)
    signature = signature_for_preview(preview)

    if config.detector.classify_before_detect and assist is not None:
        _screen_sales_like(assist, preview)

    detection = detector.detect(user_id, signature, preview)
    mapping = detection.mapping
    sheet = normalize_grid(grid, mapping.header_row_index)

    sales_col = find_column(sheet.headers, mapping.sales_column)
    bill_col = find_column(sheet.headers, mapping.bill_column)
    if not sales_col or not bill_col:
        raise ColumnMatchError(sheet.headers, mapping.sales_column, mapping.bill_column)

    kept, report = clean_rows(
        sheet.rows,
        sheet.headers,
        sales_col,
        bill_col,
        sparse_max_other_fields=config.cleaning.sparse_max_other_fields,
    )
    metrics = compute_metrics(kept, sales_col, bill_col)

    # 成功時は取得元 (cache/model/heuristic) に関わらず解決済み列名で upsert
    detector.remember(
        user_id,
        signature,
        ColumnMapping(header_row_index=mapping.header_row_index, sales_column=sales_col, bill_column=bill_col),
    )

    result = AnalysisResult(
        file_name=file_name,
        signature=signature,
        headers=sheet.headers,
        sales_column=sales_col,
        bill_column=bill_col,
        detection=detection,
        cleaning=report,
        metrics=metrics,
    )
    result = replace(result, summary=_summarize(config, assist, result))
    logger.debug(
        "file=%s strategy=%s header_row=%d sales=%s bill=%s total=%.2f rows=%d unique=%d",
        file_name,
        detection.strategy,
        mapping.header_row_index,
        sales_col,
        bill_col,
        metrics.total_sales,
        metrics.bill_row_count,
        metrics.unique_bill_count,
    )
    return result


def analyze_upload(
    content: bytes,
    file_name: str,
    user_id: int,
    detector: HeaderColumnDetector,
    config: AnalyzerConfig,
    assist: ModelAssist | None = None,
) -> AnalysisResult:
    """Read raw upload bytes (extension taken from file_name) and analyze them."""
    grid = read_grid(content, Path(file_name).suffix)
    return analyze_grid(grid, file_name, user_id, detector, config, assist)


def scan_upload_files(directory: Path, extensions: Iterable[str]) -> list[Path]:
    """Scan directory for uploads with accepted extensions (non-recursive, sorted).

    Raises:
        ProcessingError: If directory doesn't exist or can't be read
    """
    if not directory.exists():
        raise ProcessingError(f"Directory not found: {directory}")
    if not directory.is_dir():
        raise ProcessingError(f"Path is not a directory: {directory}")
    accepted = {e.lower() for e in extensions}
    try:
        return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in accepted)
    except OSError as e:
        raise ProcessingError(f"Error reading directory {directory}: {e}") from e


def _rollback(cursor: Any, file_name: str, error_log: ErrorLogBuffer) -> None:
    try:
        cursor.execute("ROLLBACK")
    except Exception as rollback_e:
        error_log.append(
            ErrorRecord.create(
                file=file_name,
                stage="transaction",
                row=-1,
                error_type="TRANSACTION_ROLLBACK_ERROR",
                message=str(rollback_e),
            )
        )


def _error_message(e: Exception) -> str:
    if isinstance(e, ColumnMatchError):
        return (
            f"{e}: headers={e.headers} sales_detected={e.sales_detected!r} "
            f"bill_detected={e.bill_detected!r}"
        )
    return str(e)


def process_file(
    file_path: Path,
    config: AnalyzerConfig,
    detector: HeaderColumnDetector,
    error_log: ErrorLogBuffer,
    cursor: Any = None,
    assist: ModelAssist | None = None,
    user_id: int | None = None,
) -> UploadFile:
    """Analyze one file, persisting metrics inside its own transaction.

    Failures never propagate: they are recorded in ``error_log`` and the
    returned UploadFile has status FAILED.
    """
    uid = config.user_id if user_id is None else user_id
    start_time = datetime.now(UTC)

    if cursor is not None:
        try:
            cursor.execute("BEGIN")
        except Exception as e:
            error_log.append(
                ErrorRecord.create(
                    file=file_path.name,
                    stage="transaction",
                    row=-1,
                    error_type="TRANSACTION_BEGIN_ERROR",
                    message=str(e),
                )
            )
            return UploadFile(
                path=file_path,
                name=file_path.name,
                start_time=start_time,
                end_time=datetime.now(UTC),
                status=FileStatus.FAILED,
                error_type="TRANSACTION_BEGIN_ERROR",
                error=f"Failed to begin transaction: {e}",
            )

    try:
        grid = read_grid_file(file_path)
        result = analyze_grid(grid, file_path.name, uid, detector, config, assist)
        metrics_id = None
        if cursor is not None:
            metrics_id = insert_sales_metrics(
                cursor,
                uid,
                SOURCE_FILE,
                {"file_name": file_path.name, "headers": result.headers},
                result.metrics,
            )
            cursor.execute("COMMIT")
        return UploadFile(
            path=file_path,
            name=file_path.name,
            start_time=start_time,
            end_time=datetime.now(UTC),
            status=FileStatus.SUCCESS,
            result=result,
            metrics_id=metrics_id,
        )
    except (AnalysisError, MetricsStoreError) as e:
        error_type = getattr(e, "error_type", "DATABASE_INSERT_ERROR")
        stage = _ERROR_STAGES.get(type(e), "analyze")
        header_row = e.header_row_index if isinstance(e, HeaderDetectionError) else -1
        failure: Exception = e
    except Exception as e:
        error_type = "UNEXPECTED_ERROR"
        stage = "analyze"
        header_row = -1
        failure = e
        logger.debug("unexpected failure file=%s", file_path.name, exc_info=True)

    if cursor is not None:
        _rollback(cursor, file_path.name, error_log)
    message = _error_message(failure)
    error_log.append(
        ErrorRecord.create(
            file=file_path.name,
            stage=stage,
            row=header_row,
            error_type=error_type,
            message=message,
        )
    )
    logger.warning("file=%s failed (%s): %s", file_path.name, error_type, message)
    return UploadFile(
        path=file_path,
        name=file_path.name,
        start_time=start_time,
        end_time=datetime.now(UTC),
        status=FileStatus.FAILED,
        error_type=error_type,
        error=message,
    )


def process_all(
    config: AnalyzerConfig,
    files: list[Path] | None = None,
    cursor: Any = None,
    assist: ModelAssist | None = None,
    cache: MappingCache | None = None,
    user_id: int | None = None,
) -> ProcessingResult:
    """Analyze every upload of a batch.

    Args:
        config: Analyzer configuration
        files: Explicit file list; None scans ``config.source_directory``
        cursor: Database cursor (None = mock mode, in-memory mapping cache)
        assist: Model-assist client (None = cache + heuristic only)
        cache: Mapping cache override (defaults depend on ``cursor``)
        user_id: Owner override (defaults to ``config.user_id``)

    Raises:
        ProcessingError: For fatal errors that prevent processing
    """
    start_time = datetime.now(UTC)
    error_log = ErrorLogBuffer()

    if files is None:
        file_paths = scan_upload_files(Path(config.source_directory), config.extensions)
    else:
        file_paths = list(files)

    if cache is None:
        cache = PostgresMappingCache(cursor) if cursor is not None else InMemoryMappingCache()
    detector = HeaderColumnDetector(cache=cache, assist=assist)

    uploads: list[UploadFile] = []
    with ProgressTracker(len(file_paths)) as progress:
        for file_path in file_paths:
            progress.start_file(file_path)
            upload = process_file(file_path, config, detector, error_log, cursor, assist, user_id)
            uploads.append(upload)
            progress.finish_file(success=(upload.status == FileStatus.SUCCESS))
            progress.set_postfix(success=progress.succeeded, failed=progress.failed)

    try:
        if len(error_log):
            error_log.flush()
    except OSError as e:
        # エラーログ書き出し失敗で全体を失敗にはしない
        logger.warning("error log flush failed: %s", e)

    file_stats: list[FileStat] = []
    total_rows = 0
    total_unique = 0
    total_sales = 0.0
    success = 0
    for up in uploads:
        if up.status == FileStatus.SUCCESS and up.result is not None:
            m = up.result.metrics
            success += 1
            total_rows += m.bill_row_count
            total_unique += m.unique_bill_count
            total_sales += m.total_sales
            file_stats.append(
                FileStat(
                    file_name=up.name,
                    status=up.status.value,
                    bill_rows=m.bill_row_count,
                    unique_bills=m.unique_bill_count,
                    total_sales=m.total_sales,
                    elapsed_seconds=up.elapsed_seconds,
                    strategy=up.result.detection.strategy,
                )
            )
        else:
            file_stats.append(
                FileStat(
                    file_name=up.name,
                    status=up.status.value,
                    bill_rows=0,
                    unique_bills=0,
                    total_sales=0.0,
                    elapsed_seconds=up.elapsed_seconds,
                    error_type=up.error_type,
                )
            )

    end_time = datetime.now(UTC)
    return ProcessingResult(
        success_files=success,
        failed_files=len(uploads) - success,
        total_bill_rows=total_rows,
        total_unique_bills=total_unique,
        total_sales=round2(total_sales),
        start_time=start_time,
        end_time=end_time,
        elapsed_seconds=(end_time - start_time).total_seconds(),
        file_stats=file_stats,
        uploads=uploads,
    )
