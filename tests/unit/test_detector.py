from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from src.db.mapping_cache import InMemoryMappingCache, MappingCacheError
from src.models.column_mapping import ColumnMapping
from src.models.errors import HeaderDetectionError
from src.services.detector import (
    STRATEGY_CACHE,
    STRATEGY_HEURISTIC,
    STRATEGY_MODEL,
    CacheStrategy,
    HeaderColumnDetector,
    HeuristicStrategy,
    ModelAssistStrategy,
    alpha_ratio,
    heuristic_detect,
    parse_mapping_response,
)
from src.services.model_assist import AssistError

PREVIEW = [
    ["Sales Register", "Outlet 1", "2024-04-01"],
    ["Date", "Bill No", "Item", "Item Net Amt"],
    ["2024-03-01", "B1000", "Coffee", "240.00"],
]


def _assist(reply: str | None = None, error: Exception | None = None) -> MagicMock:
    assist = MagicMock()
    if error is not None:
        assist.detect_header.side_effect = error
    else:
        assist.detect_header.return_value = reply
    return assist


class TestAlphaRatio:
    def test_ratio(self):
        assert alpha_ratio(["Date", "Bill", "100"]) == pytest.approx(2 / 3)

    def test_skips_empty_cells(self):
        assert alpha_ratio(["", " ", "Amount"]) == 1.0

    def test_no_non_empty_cells(self):
        assert alpha_ratio(["", "  "]) is None
        assert alpha_ratio([]) is None

    def test_unicode_letters(self):
        assert alpha_ratio(["日付", "金額"]) == 1.0


class TestHeuristic:
    def test_strictly_greater_ratio_wins(self):
        mapping = heuristic_detect(PREVIEW)
        assert mapping.header_row_index == 1
        assert mapping.sales_column == "Item Net Amt"
        assert mapping.bill_column == "Bill No"

    def test_tie_keeps_earlier_row(self):
        rows = [["Date", "Bill", "Amount"], ["Date", "Bill", "Amount"]]
        assert heuristic_detect(rows).header_row_index == 0

    def test_defaults_to_row_zero(self):
        rows = [["1", "2"], ["3", "B4", "5"]]
        mapping = heuristic_detect(rows)
        assert mapping.header_row_index == 0
        assert mapping.sales_column == ""
        assert mapping.bill_column == ""

    def test_only_first_five_rows_scanned(self):
        rows = [["1", "2"]] * 5 + [["Bill", "Amount"]]
        assert heuristic_detect(rows).header_row_index == 0

    def test_skips_blank_rows(self):
        rows = [[], ["", ""], ["Invoice No", "Net Amount"]]
        mapping = heuristic_detect(rows)
        assert mapping.header_row_index == 2
        assert mapping.bill_column == "Invoice No"
        assert mapping.sales_column == "Net Amount"

    def test_placeholder_header_names(self):
        rows = [["Bill", "", "Amount"]]
        mapping = heuristic_detect(rows)
        assert mapping.sales_column == "Amount"

    def test_strategy_failure_on_empty_preview(self):
        res = HeuristicStrategy().attempt(1, "sig", [])
        assert not res.ok
        assert res.message == "no rows to inspect"

    def test_strategy_reports_missing_columns(self):
        res = HeuristicStrategy().attempt(1, "sig", [["Date", "Item"]])
        assert res.ok
        assert res.message == "heuristic (sales/bill column not found)"


class TestParseMappingResponse:
    def test_ok(self):
        mapping, msg = parse_mapping_response(
            '```json\n{"header_row_index": 1, "sales_column": "Item Net Amt", "bill_column": "Bill No"}\n```', 3
        )
        assert msg == "ok"
        assert mapping == ColumnMapping(1, "Item Net Amt", "Bill No")

    @pytest.mark.parametrize(
        "text,message",
        [
            ("", "model returned empty"),
            ("sure! here it is", "model JSON parse error"),
            ('["a"]', "model JSON parse error"),
            ('{"header_row_index": "one", "sales_column": "A", "bill_column": "B"}', "model JSON parse error"),
            ('{"header_row_index": 0, "sales_column": "", "bill_column": "B"}', "model returned incomplete mapping"),
            ('{"header_row_index": 0, "sales_column": "A"}', "model returned incomplete mapping"),
            ('{"header_row_index": -1, "sales_column": "A", "bill_column": "B"}', "model header index out of range: -1"),
            ('{"header_row_index": 9, "sales_column": "A", "bill_column": "B"}', "model header index out of range: 9"),
        ],
    )
    def test_failures(self, text, message):
        mapping, msg = parse_mapping_response(text, 3)
        assert mapping is None
        assert msg == message


class TestCacheStrategy:
    def test_hit(self):
        cache = InMemoryMappingCache()
        cache.upsert(1, "sig", ColumnMapping(1, "Item Net Amt", "Bill No"))
        res = CacheStrategy(cache).attempt(1, "sig", PREVIEW)
        assert res.ok
        assert res.message == "cache"
        assert res.used_external_assist is False

    def test_miss_and_unavailable(self):
        assert CacheStrategy(InMemoryMappingCache()).attempt(1, "sig", PREVIEW).message == "cache miss"
        assert CacheStrategy(None).attempt(1, "sig", PREVIEW).message == "cache unavailable"

    def test_unusable_entry(self):
        cache = InMemoryMappingCache()
        cache.upsert(1, "sig", ColumnMapping(8, "Amount", "Bill"))
        res = CacheStrategy(cache).attempt(1, "sig", PREVIEW)
        assert not res.ok
        assert res.message == "cache entry unusable"

    def test_lookup_error_is_a_failure(self):
        cache = MagicMock()
        cache.get.side_effect = MappingCacheError("mapping lookup failed: boom")
        res = CacheStrategy(cache).attempt(1, "sig", PREVIEW)
        assert not res.ok
        assert "boom" in res.message


class TestModelAssistStrategy:
    def test_not_configured(self):
        res = ModelAssistStrategy(None).attempt(1, "sig", PREVIEW)
        assert res.message == "model assist not configured"

    def test_transport_error(self):
        res = ModelAssistStrategy(_assist(error=AssistError("timeout"))).attempt(1, "sig", PREVIEW)
        assert not res.ok
        assert res.message == "model generate error"

    def test_success_sets_external_flag(self):
        reply = '{"header_row_index": 1, "sales_column": "Item Net Amt", "bill_column": "Bill No"}'
        res = ModelAssistStrategy(_assist(reply)).attempt(1, "sig", PREVIEW)
        assert res.ok
        assert res.used_external_assist is True
        assert res.message == "ok"


class TestHeaderColumnDetector:
    def test_cache_hit_short_circuits(self):
        cache = InMemoryMappingCache()
        cache.upsert(1, "sig", ColumnMapping(1, "Item Net Amt", "Bill No"))
        assist = _assist("{}")
        result = HeaderColumnDetector(cache=cache, assist=assist).detect(1, "sig", PREVIEW)
        assert result.strategy == STRATEGY_CACHE
        assert result.diagnostic_message == "cache"
        assist.detect_header.assert_not_called()

    def test_empty_cache_and_failing_model_fall_back_to_heuristic(self):
        detector = HeaderColumnDetector(cache=InMemoryMappingCache(), assist=_assist(error=AssistError("down")))
        result = detector.detect(1, "sig", PREVIEW)
        assert result.strategy == STRATEGY_HEURISTIC
        assert result.used_external_assist is False
        assert result.mapping == ColumnMapping(1, "Item Net Amt", "Bill No")
        assert [(a.strategy, a.succeeded, a.message) for a in result.attempts] == [
            (STRATEGY_CACHE, False, "cache miss"),
            (STRATEGY_MODEL, False, "model generate error"),
            (STRATEGY_HEURISTIC, True, "heuristic"),
        ]

    def test_garbage_model_reply_falls_back(self):
        detector = HeaderColumnDetector(cache=InMemoryMappingCache(), assist=_assist("I think row 1"))
        result = detector.detect(1, "sig", PREVIEW)
        assert result.strategy == STRATEGY_HEURISTIC
        assert result.attempts[1].message == "model JSON parse error"

    def test_model_success(self):
        reply = '{"header_row_index": 1, "sales_column": "net amt", "bill_column": "bill"}'
        result = HeaderColumnDetector(cache=InMemoryMappingCache(), assist=_assist(reply)).detect(1, "sig", PREVIEW)
        assert result.strategy == STRATEGY_MODEL
        assert result.used_external_assist is True
        assert result.mapping.sales_column == "net amt"

    def test_exhaustion_raises(self):
        with pytest.raises(HeaderDetectionError, match="could not detect header row"):
            HeaderColumnDetector().detect(1, "sig", [])

    def test_remember_upserts(self):
        cache = InMemoryMappingCache()
        detector = HeaderColumnDetector(cache=cache)
        mapping = ColumnMapping(0, "Amount", "Bill")
        assert detector.remember(1, "sig", mapping) is True
        assert cache.get(1, "sig") == mapping

    def test_remember_swallows_cache_errors(self):
        cache = MagicMock()
        cache.upsert.side_effect = MappingCacheError("mapping upsert failed: gone")
        assert HeaderColumnDetector(cache=cache).remember(1, "sig", ColumnMapping(0, "A", "B")) is False

    def test_remember_without_cache(self):
        assert HeaderColumnDetector().remember(1, "sig", ColumnMapping(0, "A", "B")) is False
