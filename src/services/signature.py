from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence

"""Preview signature used as the mapping cache key.

The signature is the SHA-256 hex digest of the compact JSON serialization of
the preview rows. It is order-sensitive and only ever used as a cache key.
"""

__all__ = [
    "signature_for_preview",
]


def signature_for_preview(preview: Sequence[Sequence[str]]) -> str:
    """Return a 64-char hex signature for the preview rows.

    >>> signature_for_preview([]) == signature_for_preview([])
    True
    >>> len(signature_for_preview([["Date", "Bill No", "Amount"]]))
    64
    """
    payload = json.dumps([list(r) for r in preview], ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
