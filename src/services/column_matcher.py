from __future__ import annotations

from collections.abc import Sequence

"""Column resolution helpers.

find_column() maps a proposed column name (possibly approximate, e.g. from the
model) onto the real header text; pick_column() chooses a header from a
priority-ordered keyword list for the heuristic detector.
"""

__all__ = [
    "SALES_KEYWORDS",
    "BILL_KEYWORDS",
    "find_column",
    "pick_column",
]

# 優先度順 (先頭ほど優先)
SALES_KEYWORDS: tuple[str, ...] = (
    "sales",
    "amount",
    "amt",
    "net amt",
    "net amount",
    "total",
    "grand total",
    "invoice amount",
    "subtotal",
    "item net amt",
)

BILL_KEYWORDS: tuple[str, ...] = (
    "bill",
    "bill no",
    "bill number",
    "invoice",
    "invoice no",
    "invoice number",
    "inv",
    "ref no",
    "reference",
    "voucher",
    "receipt",
)


def find_column(headers: Sequence[str], target: str) -> str:
    """Return the header matching ``target``, or "" if none does.

    Exact case-insensitive equality (trimmed) first, then case-insensitive
    containment of the target inside a header. First match in header order
    wins. An empty target never matches.
    """
    t = target.strip().lower()
    if not t:
        return ""
    for h in headers:
        if h.strip().lower() == t:
            return h
    for h in headers:
        if t in h.lower():
            return h
    return ""


def pick_column(headers: Sequence[str], keywords: Sequence[str]) -> str:
    """Pick a header by keyword priority: exact pass over all keywords, then substring pass."""
    for k in keywords:
        lk = k.lower()
        for h in headers:
            if h.lower() == lk:
                return h
    for k in keywords:
        lk = k.lower()
        for h in headers:
            if lk in h.lower():
                return h
    return ""
