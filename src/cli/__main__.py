from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from src.config.loader import ConfigError, load_config
from src.db.metrics_store import SOURCE_TEXT, MetricsStoreError, fetch_latest_metrics, insert_sales_metrics
from src.db.schema import ensure_schema
from src.excel.reader import preview_rows, read_grid_file
from src.logging.init import get_logger, log_summary, set_debug, setup_logging
from src.models.config_models import AnalyzerConfig
from src.models.errors import FormatError
from src.models.upload_file import FileStatus
from src.services.model_assist import ModelAssist
from src.services.orchestrator import ProcessingError, process_all, scan_upload_files
from src.services.signature import signature_for_preview
from src.services.summary import render_summary_line, simple_summary
from src.services.text_metrics import metrics_from_text

"""CLI entrypoint.

Flow:
- Load .env (override) then config/import.yml (or --config)
- Connect to PostgreSQL (DATABASE_URL / PGDSN / PG* / config.database);
  unreachable DB or DISABLE_DB_CONNECT=1 -> mock mode (in-memory mapping cache)
- Analyze each upload (explicit FILE args or source_directory scan)
- Print one SUMMARY line; exit 0 (all ok) / 2 (any failed) / 1 (fatal)
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

DEFAULT_CONFIG_PATH = Path("config/import.yml")


def _resolve_dsn(cfg: AnalyzerConfig) -> str:
    """Connection string resolution.

    接続情報の優先順位:
        1. DATABASE_URL / PGDSN (.env で上書き済み)
        2. 個別 PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
        3. config の database セクション (不足分のフォールバック)
    """
    db_cfg = cfg.database
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def _db_connection(cfg: AnalyzerConfig) -> Iterator[Any]:  # pragma: no cover (thin wrapper)
    """psycopg2 connection + cursor with tables ensured.

    autocommit=True: orchestrator が BEGIN/COMMIT/ROLLBACK を明示発行する。
    """
    conn = psycopg2.connect(_resolve_dsn(cfg))
    conn.autocommit = True
    cur = None
    try:
        cur = conn.cursor()
        ensure_schema(cur)
        yield cur
    finally:
        if cur is not None:
            cur.close()
        conn.close()


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv (override=True: .env wins over the process env)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Sales export analyzer (CSV / Excel)")
    p.add_argument("files", nargs="*", type=Path, metavar="FILE", help="Uploads to analyze (default: scan source_directory)")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Config YAML path")
    p.add_argument("--user-id", type=int, default=None, help="Owner id for mapping cache / metrics rows")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--inspect-data", action="store_true", help="Print preview rows + signature per file then exit")
    p.add_argument("--no-ai", action="store_true", help="Disable model-assisted detection")
    p.add_argument("--json", action="store_true", help="Print each file's result as JSON")
    p.add_argument("--text", default=None, help="Record metrics typed as free text instead of analyzing files")
    p.add_argument("--latest", action="store_true", help="Print the most recent stored metrics of the user as JSON")
    return p.parse_args(argv)


def _inspect_data(cfg: AnalyzerConfig, files: list[Path]) -> int:
    logger = get_logger()
    try:
        targets = files or scan_upload_files(Path(cfg.source_directory), cfg.extensions)
    except ProcessingError as e:
        logger.error(f"inspect: {e}")
        return EXIT_FATAL
    if not targets:
        print("inspect: no uploads found")
        return EXIT_SUCCESS_ALL
    for f in targets:
        print(f"FILE: {f.name}")
        try:
            grid = read_grid_file(f)
        except (FormatError, OSError) as e:
            print(f"  read_error: {e}")
            continue
        preview = preview_rows(grid, cfg.preview_rows)
        print(f"  rows={len(grid)} signature={signature_for_preview(preview)}")
        for i, row in enumerate(preview):
            print(f"  [{i}] {json.dumps(row, ensure_ascii=False)}")
    return EXIT_SUCCESS_ALL


def _record_text(cfg: AnalyzerConfig, text: str, user_id: int, use_db: bool) -> int:
    logger = get_logger()
    metrics = metrics_from_text(text)
    logger.info(simple_summary(metrics))
    if not use_db:
        logger.info("mode=mock text metrics not persisted")
        return EXIT_SUCCESS_ALL
    try:
        with _db_connection(cfg) as cur:
            metrics_id = insert_sales_metrics(cur, user_id, SOURCE_TEXT, {"text": text}, metrics)
    except MetricsStoreError as e:
        logger.error(f"persist: {e}")
        return EXIT_FATAL
    except psycopg2.Error as e:
        logger.info(f"DB connection failed -> text metrics not persisted: {e}")
        return EXIT_SUCCESS_ALL
    logger.info(f"mode=live metrics_id={metrics_id}")
    return EXIT_SUCCESS_ALL


def _show_latest(cfg: AnalyzerConfig, user_id: int, use_db: bool) -> int:
    logger = get_logger()
    if not use_db:
        logger.error("latest: DB connect disabled via DISABLE_DB_CONNECT=1")
        return EXIT_FATAL
    try:
        with _db_connection(cfg) as cur:
            stored = fetch_latest_metrics(cur, user_id)
    except (MetricsStoreError, psycopg2.Error) as e:
        logger.error(f"latest: {e}")
        return EXIT_FATAL
    if stored is None:
        print(f"latest: no metrics recorded for user_id={user_id}")
        return EXIT_SUCCESS_ALL
    print(json.dumps(stored.to_dict(), ensure_ascii=False))
    return EXIT_SUCCESS_ALL


def _print_json(result: Any) -> None:
    for up in result.uploads or []:
        if up.status == FileStatus.SUCCESS and up.result is not None:
            payload = up.result.to_dict()
        else:
            payload = {"meta": {"file_name": up.name}, "error": {"type": up.error_type, "message": up.error}}
        print(json.dumps(payload, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # 空リスト [] のときに sys.argv (pytest の引数) を拾わないよう None のみ判定
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    user_id = cfg.user_id if args.user_id is None else args.user_id
    use_db = os.getenv("DISABLE_DB_CONNECT") != "1"

    if args.text is not None:
        return _record_text(cfg, args.text, user_id, use_db)

    if args.latest:
        return _show_latest(cfg, user_id, use_db)

    if args.inspect_data:
        return _inspect_data(cfg, args.files)

    files: list[Path] | None = list(args.files) or None
    if files is None:
        directory = Path(cfg.source_directory)
        if not directory.exists():
            logger.error(f"directory not found: {directory}")
            return EXIT_FATAL
        logger.info(f"Processing files from: {directory}")
    else:
        missing = [f for f in files if not f.is_file()]
        if missing:
            logger.error(f"file not found: {', '.join(str(m) for m in missing)}")
            return EXIT_FATAL

    assist = None if args.no_ai else ModelAssist.from_config(cfg.detector)
    logger.debug(f"model assist {'enabled' if assist is not None else 'disabled'}")

    db_mode = "mock"
    result = None
    if use_db:
        try:
            with _db_connection(cfg) as cur:
                db_mode = "live"
                result = process_all(cfg, files=files, cursor=cur, assist=assist, user_id=user_id)
        except ProcessingError as e:
            logger.error(f"processing: {e}")
            return EXIT_FATAL
        except psycopg2.Error as db_e:
            if result is not None:
                # 処理・コミット済み: 接続クローズ時の失敗は live のまま報告
                logger.warning(f"DB connection close failed: {db_e}")
            else:
                if os.getenv("SUPPRESS_DB_WARNING") == "1":
                    logger.debug(f"DB connection failed -> fallback to mock mode: {db_e}")
                else:
                    logger.info(f"DB connection failed -> fallback to mock mode: {db_e}")
                db_mode = "mock"
    else:
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> mock mode")

    if result is None:
        try:
            result = process_all(cfg, files=files, cursor=None, assist=assist, user_id=user_id)
        except ProcessingError as e:
            logger.error(f"processing(mock): {e}")
            return EXIT_FATAL

    logger.info(f"mode={db_mode} rows={result.total_bill_rows}")
    if args.json:
        _print_json(result)

    # log_summary 側で "SUMMARY " ラベルが付くので先頭を外す
    summary_line = render_summary_line(result)
    log_summary(summary_line[len("SUMMARY "):])

    if result.failed_files > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
