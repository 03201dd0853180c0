from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from ..db.mapping_cache import MappingCache, MappingCacheError
from ..models.analysis_result import DetectionResult, StrategyAttempt
from ..models.column_mapping import ColumnMapping
from ..models.errors import HeaderDetectionError
from .column_matcher import BILL_KEYWORDS, SALES_KEYWORDS, pick_column
from .model_assist import AssistError, ModelAssist, strip_fences

"""Header/column detection cascade.

Resolution order (first success wins):

1. CacheStrategy      - previously confirmed mapping for (user_id, signature)
2. ModelAssistStrategy - language model proposes header row + column names
3. HeuristicStrategy  - alpha-ratio header scoring + keyword column picking

Strategies never raise; each returns a StrategyResult (success or failure with
a diagnostic message). The detector records every attempt so reporting can
show why earlier strategies were skipped. Only exhaustion of all strategies
raises HeaderDetectionError.
"""

__all__ = [
    "STRATEGY_CACHE",
    "STRATEGY_MODEL",
    "STRATEGY_HEURISTIC",
    "HEURISTIC_SCAN_ROWS",
    "StrategyResult",
    "DetectionStrategy",
    "CacheStrategy",
    "ModelAssistStrategy",
    "HeuristicStrategy",
    "alpha_ratio",
    "heuristic_detect",
    "parse_mapping_response",
    "HeaderColumnDetector",
]

logger = logging.getLogger(__name__)

STRATEGY_CACHE = "cache"
STRATEGY_MODEL = "model"
STRATEGY_HEURISTIC = "heuristic"

HEURISTIC_SCAN_ROWS = 5
HEADER_MIN_ALPHA_RATIO = 0.5


@dataclass(frozen=True)
class StrategyResult:
    strategy: str
    mapping: ColumnMapping | None
    message: str
    used_external_assist: bool = False

    @property
    def ok(self) -> bool:
        return self.mapping is not None

    @staticmethod
    def failure(strategy: str, message: str) -> StrategyResult:
        return StrategyResult(strategy=strategy, mapping=None, message=message)


class DetectionStrategy:
    """Base class: ``attempt`` returns a StrategyResult and never raises."""
    name = ""

    def attempt(self, user_id: int, signature: str, preview: Sequence[Sequence[str]]) -> StrategyResult:
        raise NotImplementedError


class CacheStrategy(DetectionStrategy):
    name = STRATEGY_CACHE

    def __init__(self, cache: MappingCache | None) -> None:
        self.cache = cache

    def attempt(self, user_id: int, signature: str, preview: Sequence[Sequence[str]]) -> StrategyResult:
        if self.cache is None or not signature:
            return StrategyResult.failure(self.name, "cache unavailable")
        try:
            mapping = self.cache.get(user_id, signature)
        except MappingCacheError as e:
            logger.warning("mapping cache lookup failed: %s", e)
            return StrategyResult.failure(self.name, str(e))
        if mapping is None:
            return StrategyResult.failure(self.name, "cache miss")
        if not mapping.is_complete() or mapping.header_row_index >= len(preview):
            return StrategyResult.failure(self.name, "cache entry unusable")
        return StrategyResult(strategy=self.name, mapping=mapping, message="cache")


def parse_mapping_response(text: str, preview_len: int) -> tuple[ColumnMapping | None, str]:
    """Parse the model reply into a mapping.

    Returns (mapping, "ok") on success, otherwise (None, diagnostic).
    """
    if not text.strip():
        return None, "model returned empty"
    try:
        out = json.loads(strip_fences(text))
    except json.JSONDecodeError:
        return None, "model JSON parse error"
    if not isinstance(out, dict):
        return None, "model JSON parse error"

    raw_idx = out.get("header_row_index")
    if isinstance(raw_idx, bool) or not isinstance(raw_idx, (int, float)):
        return None, "model JSON parse error"
    if isinstance(raw_idx, float) and not raw_idx.is_integer():
        return None, "model JSON parse error"
    idx = int(raw_idx)

    sales = out.get("sales_column")
    bill = out.get("bill_column")
    sales = sales.strip() if isinstance(sales, str) else ""
    bill = bill.strip() if isinstance(bill, str) else ""
    if not sales or not bill:
        return None, "model returned incomplete mapping"
    if idx < 0 or idx >= preview_len:
        return None, f"model header index out of range: {idx}"
    return ColumnMapping(header_row_index=idx, sales_column=sales, bill_column=bill), "ok"


class ModelAssistStrategy(DetectionStrategy):
    name = STRATEGY_MODEL

    def __init__(self, assist: ModelAssist | None) -> None:
        self.assist = assist

    def attempt(self, user_id: int, signature: str, preview: Sequence[Sequence[str]]) -> StrategyResult:
        if self.assist is None:
            return StrategyResult.failure(self.name, "model assist not configured")
        try:
            text = self.assist.detect_header(preview)
        except AssistError as e:
            logger.debug("model assist failed: %s", e)
            return StrategyResult.failure(self.name, "model generate error")
        mapping, message = parse_mapping_response(text, len(preview))
        if mapping is None:
            return StrategyResult.failure(self.name, message)
        return StrategyResult(strategy=self.name, mapping=mapping, message=message, used_external_assist=True)


def _has_letter(text: str) -> bool:
    return any(ch.isalpha() for ch in text)


def alpha_ratio(row: Sequence[str]) -> float | None:
    """Share of non-empty cells containing a letter; None for rows with no non-empty cell."""
    non_empty = 0
    alpha = 0
    for v in row:
        t = v.strip()
        if not t:
            continue
        non_empty += 1
        if _has_letter(t):
            alpha += 1
    if non_empty == 0:
        return None
    return alpha / non_empty


def heuristic_detect(rows: Sequence[Sequence[str]]) -> ColumnMapping:
    """Pick the header row and target columns without any external help.

    Only the first HEURISTIC_SCAN_ROWS rows are scored. The first row whose
    ratio is >= 0.5 and strictly greater than every earlier candidate wins
    (同率なら先の行). Row 0 when nothing qualifies. Column names may be ""
    when no keyword matches.
    """
    header_idx = -1
    best = -1.0
    for i, row in enumerate(rows[:HEURISTIC_SCAN_ROWS]):
        score = alpha_ratio(row)
        if score is None:
            continue
        if score >= HEADER_MIN_ALPHA_RATIO and score > best:
            best = score
            header_idx = i
    if header_idx == -1:
        header_idx = 0

    headers: list[str] = []
    if header_idx < len(rows):
        for i, v in enumerate(rows[header_idx]):
            t = v.strip()
            headers.append(t if t else f"Col{i}")
    return ColumnMapping(
        header_row_index=header_idx,
        sales_column=pick_column(headers, SALES_KEYWORDS),
        bill_column=pick_column(headers, BILL_KEYWORDS),
    )


class HeuristicStrategy(DetectionStrategy):
    name = STRATEGY_HEURISTIC

    def attempt(self, user_id: int, signature: str, preview: Sequence[Sequence[str]]) -> StrategyResult:
        if not preview:
            return StrategyResult.failure(self.name, "no rows to inspect")
        mapping = heuristic_detect(preview)
        missing = [
            name
            for name, value in (("sales", mapping.sales_column), ("bill", mapping.bill_column))
            if not value
        ]
        message = "heuristic" if not missing else f"heuristic ({'/'.join(missing)} column not found)"
        # 列名が空でもヘッダ行は確定 -> 後段の列照合でヘッダ一覧付きエラーになる
        return StrategyResult(strategy=self.name, mapping=mapping, message=message)


class HeaderColumnDetector:
    """Runs the strategy cascade.

    The mapping cache is injected by the caller (connection lifecycle belongs
    to the request / batch layer, not to this class).
    """

    def __init__(
        self,
        cache: MappingCache | None = None,
        assist: ModelAssist | None = None,
        strategies: Sequence[DetectionStrategy] | None = None,
    ) -> None:
        self.cache = cache
        if strategies is None:
            strategies = (CacheStrategy(cache), ModelAssistStrategy(assist), HeuristicStrategy())
        self.strategies = tuple(strategies)

    def detect(self, user_id: int, signature: str, preview: Sequence[Sequence[str]]) -> DetectionResult:
        attempts: list[StrategyAttempt] = []
        for strategy in self.strategies:
            result = strategy.attempt(user_id, signature, preview)
            attempts.append(StrategyAttempt(strategy=result.strategy, succeeded=result.ok, message=result.message))
            logger.debug("detect strategy=%s ok=%s message=%s", result.strategy, result.ok, result.message)
            if result.ok and result.mapping is not None:
                return DetectionResult(
                    mapping=result.mapping,
                    strategy=result.strategy,
                    used_external_assist=result.used_external_assist,
                    diagnostic_message=result.message,
                    attempts=tuple(attempts),
                )
        raise HeaderDetectionError("could not detect header row", -1)

    def remember(self, user_id: int, signature: str, mapping: ColumnMapping) -> bool:
        """Upsert the mapping for later uploads; failures are logged, not raised."""
        if self.cache is None or not signature:
            return False
        try:
            self.cache.upsert(user_id, signature, mapping)
        except MappingCacheError as e:
            logger.warning("mapping cache upsert failed: %s", e)
            return False
        return True
