"""Token counting utilities."""

from __future__ import annotations

import math


def estimate_tokens(text: str) -> int:
    """Approximate token count using the chars/4 heuristic.

    This is not a tokenizer. Budget math built on it is inexact by design of
    the approximation, so callers should leave headroom.
    """
    return math.ceil(len(text) / 4)


def get_compression_stats(original: str, compressed: str) -> dict[str, int]:
    """Compare token estimates of an original and a compressed text."""
    original_tokens = estimate_tokens(original)
    compressed_tokens = estimate_tokens(compressed)
    if original_tokens == 0:
        reduction = 0
    else:
        reduction = round((1 - compressed_tokens / original_tokens) * 100)
    return {
        "original_tokens": original_tokens,
        "compressed_tokens": compressed_tokens,
        "reduction": reduction,
    }
