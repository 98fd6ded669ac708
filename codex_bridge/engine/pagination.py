"""Token estimation and page slicing for oversized results.

Results are measured with a conservative characters-per-token ratio
and sliced into pages whose boundaries fall on whitespace or sentence
punctuation where possible, so every page but the last ends on a
word boundary and the pages concatenate back to the original text.
"""
from __future__ import annotations

import math

from .models import Page, TokenEstimate

CHARS_PER_TOKEN = 3.5
DEFAULT_MAX_TOKENS_PER_PAGE = 20000
MAX_LOOKBACK_CHARS = 200
TRUNCATION_MARKER = "..."
_BREAK_CHARS = frozenset(" \t\r\n.!?;")


def estimate_tokens(text: str, limit: int = DEFAULT_MAX_TOKENS_PER_PAGE) -> TokenEstimate:
    """Rough token count (ceil(chars / 3.5)); over limit when above *limit*."""
    characters = len(text)
    estimated = math.ceil(characters / CHARS_PER_TOKEN)
    return TokenEstimate(
        characters=characters,
        estimated_tokens=estimated,
        is_over_limit=estimated > limit,
    )


def _find_break(text: str, start: int, end: int, lookback: int) -> int | None:
    """Index just past the last break char in text[end-lookback:end]."""
    floor = max(start, end - lookback)
    for i in range(end - 1, floor - 1, -1):
        if text[i] in _BREAK_CHARS:
            return i + 1
    return None


def page_spans(text: str, max_chars: int) -> list[tuple[int, int, bool]]:
    """Split *text* into (start, end, hard_cut) spans of at most max_chars."""
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    lookback = min(MAX_LOOKBACK_CHARS, max(1, max_chars // 10))
    spans: list[tuple[int, int, bool]] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + max_chars, length)
        hard_cut = False
        if end < length:
            brk = _find_break(text, start, end, lookback)
            if brk is None:
                hard_cut = True
            else:
                end = brk
        spans.append((start, end, hard_cut))
        start = end
    return spans or [(0, 0, False)]


def paginate(
    text: str,
    max_tokens_per_page: int = DEFAULT_MAX_TOKENS_PER_PAGE,
    page: int = 1,
) -> Page:
    """Return page *page* (clamped into [1, total]) of *text*."""
    if max_tokens_per_page <= 0:
        raise ValueError("max_tokens_per_page must be positive")

    estimate = estimate_tokens(text, max_tokens_per_page)
    if not estimate.is_over_limit:
        return Page(
            content=text,
            page_index=1,
            total_pages=1,
            token_estimate=estimate,
            has_more=False,
        )

    max_chars = math.floor(max_tokens_per_page * CHARS_PER_TOKEN)
    spans = page_spans(text, max_chars)
    total = len(spans)
    page_index = max(1, min(page, total))
    start, end, hard_cut = spans[page_index - 1]
    content = text[start:end]
    if hard_cut:
        content += TRUNCATION_MARKER

    return Page(
        content=content,
        page_index=page_index,
        total_pages=total,
        token_estimate=estimate_tokens(content, max_tokens_per_page),
        has_more=page_index < total,
        truncated=hard_cut,
    )


def format_paginated_response(
    page: Page,
    full_text: str,
    request_id: str | None = None,
) -> str:
    """Page content plus a navigation footer for multi-page results."""
    if page.total_pages <= 1:
        return page.content

    total_tokens = estimate_tokens(full_text).estimated_tokens
    lines = [
        f"--- Page {page.page_index} of {page.total_pages} ---",
        f"Tokens: ~{page.token_estimate.estimated_tokens} (of ~{total_tokens} total)",
        (
            f"Use page={page.page_index + 1} for the next page"
            if page.has_more else "End of response"
        ),
    ]
    if request_id:
        lines.append(f"Request ID: {request_id}")
    return page.content + "\n\n" + "\n".join(lines)
