from __future__ import annotations

import pytest

from codex_bridge.engine.pagination import (
    CHARS_PER_TOKEN,
    TRUNCATION_MARKER,
    estimate_tokens,
    format_paginated_response,
    page_spans,
    paginate,
)


def _all_pages(text: str, max_tokens: int) -> list:
    first = paginate(text, max_tokens, 1)
    return [paginate(text, max_tokens, n) for n in range(1, first.total_pages + 1)]


def test_estimate_tokens_rounds_up() -> None:
    estimate = estimate_tokens("abcdefgh", limit=2)
    assert estimate.characters == 8
    assert estimate.estimated_tokens == 3
    assert estimate.is_over_limit is True
    assert estimate_tokens("", limit=1).estimated_tokens == 0


def test_small_text_is_a_single_page() -> None:
    page = paginate("short answer", 100, page=1)
    assert page.total_pages == 1
    assert page.page_index == 1
    assert page.content == "short answer"
    assert page.has_more is False


def test_empty_text_is_a_single_empty_page() -> None:
    page = paginate("", 100, page=3)
    assert page.total_pages == 1
    assert page.page_index == 1
    assert page.content == ""


def test_pages_reassemble_to_the_original_text() -> None:
    text = "The quick brown fox jumps over the lazy dog. " * 400
    pages = _all_pages(text, max_tokens=500)

    assert len(pages) > 1
    assert "".join(p.content for p in pages) == text
    assert all(not p.truncated for p in pages)
    assert [p.has_more for p in pages] == [True] * (len(pages) - 1) + [False]


def test_every_page_but_the_last_ends_on_a_break() -> None:
    text = "alpha beta gamma; delta epsilon! zeta eta? theta. " * 300
    pages = _all_pages(text, max_tokens=300)
    max_chars = int(300 * CHARS_PER_TOKEN)
    for page in pages[:-1]:
        assert page.content[-1] in " .!?;"
        assert len(page.content) <= max_chars


def test_page_index_is_clamped() -> None:
    text = "word " * 2000
    total = paginate(text, 200, 1).total_pages

    assert paginate(text, 200, 0).page_index == 1
    assert paginate(text, 200, -5).page_index == 1
    last = paginate(text, 200, total + 10)
    assert last.page_index == total
    assert last.has_more is False


def test_unbroken_text_is_hard_cut_with_marker() -> None:
    text = "x" * 5000
    page = paginate(text, 100, 1)

    assert page.truncated is True
    assert page.content.endswith(TRUNCATION_MARKER)
    assert page.content[: -len(TRUNCATION_MARKER)] == "x" * 350


def test_page_spans_cover_the_text_without_gaps() -> None:
    text = "lorem ipsum dolor sit amet " * 100
    spans = page_spans(text, 120)
    assert spans[0][0] == 0
    assert spans[-1][1] == len(text)
    for (_, end, _), (start, _, _) in zip(spans, spans[1:]):
        assert end == start


def test_non_positive_page_size_is_rejected() -> None:
    with pytest.raises(ValueError):
        paginate("text", 0)
    with pytest.raises(ValueError):
        page_spans("text", 0)


def test_format_paginated_response_adds_navigation_footer() -> None:
    text = "word " * 2000
    page = paginate(text, 200, 1)

    formatted = format_paginated_response(page, text, request_id="req_abc")

    assert formatted.startswith(page.content)
    assert f"--- Page 1 of {page.total_pages} ---" in formatted
    assert "Use page=2 for the next page" in formatted
    assert "Request ID: req_abc" in formatted

    single = paginate("tiny", 200, 1)
    assert format_paginated_response(single, "tiny") == "tiny"
