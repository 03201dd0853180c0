from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Sequence
from typing import Any

import pandas as pd
from openai import OpenAI

from ..models.analysis_result import SalesMetrics
from ..models.config_models import DetectorConfig

"""Model-assisted capabilities backed by the OpenAI API.

The analyzer consumes the language model through three narrow calls:

- detect_header(preview)  -> raw text that should be a JSON mapping
- classify_sales(preview) -> (is_sales, confidence)
- summarize(metrics)      -> one short sentence

Each call is a single blocking round-trip bounded by ``timeout_seconds``
(max_retries=0: リトライは行わない). Transport errors surface as AssistError;
the detector turns them into a failed strategy result.
"""

__all__ = [
    "AssistError",
    "ModelAssist",
    "split_preview_json",
    "strip_fences",
    "build_detect_prompt",
    "build_classify_prompt",
]

logger = logging.getLogger(__name__)

API_KEY_ENV = "OPENAI_API_KEY"


class AssistError(Exception):
    pass


def split_preview_json(preview: Sequence[Sequence[str]]) -> str:
    """Preview as pandas JSON (orient='split') with col0..colN column names."""
    df = pd.DataFrame([list(r) for r in preview], dtype=object)
    df.columns = [f"col{i}" for i in range(df.shape[1])]
    return df.to_json(orient="split", force_ascii=False)


def strip_fences(text: str) -> str:
    """Remove ```json ... ``` wrapping if the model added it anyway."""
    t = text.strip()
    if t.startswith("```json"):
        t = t[len("```json"):]
    elif t.startswith("```"):
        t = t[3:]
    if t.endswith("```"):
        t = t[:-3]
    return t.strip()


def build_detect_prompt(preview: Sequence[Sequence[str]]) -> str:
    return (
        "You are a data understanding AI.\n\n"
        f"Given the first {len(preview)} rows of a tabular file, identify:\n"
        "1) Which row (0-based index) is most likely the header (column names).\n"
        '2) The exact column name that represents "Sales" or "Amount".\n'
        '3) The exact column name that represents "Bill" or "Invoice".\n\n'
        "Important:\n"
        "- Return STRICT JSON only, no commentary, no markdown fences.\n"
        "- Use keys exactly: header_row_index, sales_column, bill_column.\n\n"
        "Example format:\n"
        '{"header_row_index": 0, "sales_column": "Item Net Amt", "bill_column": "Bill No"}\n\n'
        "Here are the rows (Pandas JSON with orient='split'):\n"
        + split_preview_json(preview)
    )


def build_classify_prompt(preview: Sequence[Sequence[str]]) -> str:
    return (
        "Classify if the table is sales data.\n"
        'Return strict JSON {"is_sales":true|false,"confidence":0..1}.\n'
        "Sales data typically has a money/amount column and a bill/invoice/ref column.\n"
        "Preview (orient='split'):\n"
        + split_preview_json(preview)
    )


def build_summary_prompt(metrics: SalesMetrics) -> str:
    return (
        "Create a short, friendly one-sentence summary for a user.\n"
        "Facts:\n"
        f"- Total sales = {metrics.total_sales:.2f}\n"
        f"- Bill row count = {metrics.bill_row_count}\n"
        f"- Unique bill IDs = {metrics.unique_bill_count}\n"
        "Keep it concise and neutral (no emojis)."
    )


class ModelAssist:
    """Thin wrapper around an OpenAI chat-completions client.

    Parameters
    ----------
    model: モデル名 (例: gpt-4o-mini)
    timeout_seconds: 1 リクエストあたりのタイムアウト
    api_key: 省略時は OPENAI_API_KEY
    client: テスト用に差し替え可能な OpenAI 互換クライアント
    """

    def __init__(
        self,
        model: str,
        timeout_seconds: float = 30.0,
        api_key: str | None = None,
        client: Any = None,
    ) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        if client is None:
            key = api_key or os.getenv(API_KEY_ENV)
            if not key:
                raise AssistError(f"{API_KEY_ENV} not configured")
            client = OpenAI(api_key=key, timeout=timeout_seconds, max_retries=0)
        self._client = client

    @classmethod
    def from_config(cls, cfg: DetectorConfig) -> ModelAssist | None:
        """Build from config; None when disabled or no API key is available."""
        if not cfg.enabled:
            return None
        if not os.getenv(API_KEY_ENV):
            logger.debug("model assist disabled: %s not set", API_KEY_ENV)
            return None
        return cls(model=cfg.model, timeout_seconds=cfg.timeout_seconds)

    def generate(self, prompt: str, max_tokens: int = 300) -> str:
        """Single completion round-trip; returns stripped text (may be empty)."""
        t0 = time.monotonic()
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0,
                max_tokens=max_tokens,
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            ms = int((time.monotonic() - t0) * 1000)
            logger.warning("model assist %s %dms FAIL: %s", self.model, ms, e)
            raise AssistError(f"model request failed: {e}") from e
        text = ""
        if resp is not None and getattr(resp, "choices", None):
            text = resp.choices[0].message.content or ""
        ms = int((time.monotonic() - t0) * 1000)
        logger.debug("model assist %s %dms %s", self.model, ms, "OK" if text.strip() else "EMPTY")
        return text.strip()

    def detect_header(self, preview: Sequence[Sequence[str]]) -> str:
        return self.generate(build_detect_prompt(preview))

    def classify_sales(self, preview: Sequence[Sequence[str]]) -> tuple[bool, float]:
        """Ask whether the preview looks like sales data.

        Raises AssistError on transport failure, empty reply or non-JSON reply.
        """
        text = self.generate(build_classify_prompt(preview), max_tokens=60)
        if not text:
            raise AssistError("classification failed: empty response")
        try:
            out = json.loads(strip_fences(text))
        except json.JSONDecodeError as e:
            raise AssistError(f"classification failed: {e}") from e
        if not isinstance(out, dict):
            raise AssistError("classification failed: not a JSON object")
        try:
            confidence = float(out.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return bool(out.get("is_sales", False)), confidence

    def summarize(self, metrics: SalesMetrics) -> str:
        return self.generate(build_summary_prompt(metrics), max_tokens=120)
