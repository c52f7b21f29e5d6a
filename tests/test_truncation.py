"""Tests for the adaptive truncation budget."""

from __future__ import annotations

import math

import pytest

from tabpilot.ai.ai_types import ContextOverflow
from tabpilot.ai.context.truncation import (
    AFTER_TRUNCATED_TEXT,
    BEFORE_TRUNCATED_TEXT,
    DocumentViews,
    TruncationBudget,
    TruncationConfig,
    truncate_views,
)


def _lines(count: int) -> str:
    """Document of ``count`` lines, ten characters per line including the newline."""
    return "\n".join(f"{index:09d}" for index in range(count))


@pytest.fixture
def budget() -> TruncationBudget:
    return TruncationBudget()


def _overflow(budget: TruncationBudget, doc_id: str = "doc", prompt_size: int = 9000, **kwargs) -> None:
    budget.record_overflow(
        doc_id,
        kwargs.pop("context_size", 8192),
        prompt_size,
        prompt_chars=kwargs.pop("prompt_chars", 40_000),
        document_chars=kwargs.pop("document_chars", 30_000),
        **kwargs,
    )


# =============================================================================
# View rendering
# =============================================================================


class TestTruncateViews:
    def test_fits_returns_full_text(self):
        views = truncate_views("short text", 0, 100)

        assert views == DocumentViews.full("short text")
        assert views.truncated is False
        assert views.truncated_len == 0

    def test_head_view(self):
        text = _lines(100)
        views = truncate_views(text, 50, 95)

        assert views.head.text == f"{text[:95]}\n\n{AFTER_TRUNCATED_TEXT}"
        assert views.head.start_line == 0

    def test_cursor_view_centered(self):
        text = _lines(100)
        views = truncate_views(text, 50, 100)

        cursor_offset = 500
        expected = text[cursor_offset - 50:cursor_offset + 50]
        assert views.cursor.text == f"{BEFORE_TRUNCATED_TEXT}\n\n{expected}\n\n{AFTER_TRUNCATED_TEXT}"
        assert views.cursor.start_line == 45 - 2
        assert views.truncated_len == 100

    def test_centering_compensates_for_tail_clipping(self):
        text = _lines(2000)
        cursor_offset = 1990 * 10
        views = truncate_views(text, 1990, 500)

        excerpt = views.cursor.text[len(BEFORE_TRUNCATED_TEXT) + 2:-(len(AFTER_TRUNCATED_TEXT) + 2)]
        start = text.index(excerpt)
        assert len(excerpt) == 500
        assert start < cursor_offset - 250
        assert start + len(excerpt) == len(text)
        assert text.endswith(excerpt)

    def test_start_clipping_extends_end(self):
        text = _lines(100)
        views = truncate_views(text, 1, 200)

        excerpt = views.cursor.text[len(BEFORE_TRUNCATED_TEXT) + 2:-(len(AFTER_TRUNCATED_TEXT) + 2)]
        assert excerpt == text[:200]
        assert views.cursor.start_line == -2


# =============================================================================
# Budget ratchets
# =============================================================================


class TestTruncationBudget:
    def test_unknown_document_not_truncated(self, budget: TruncationBudget):
        text = _lines(5000)

        views = budget.get_view("doc", text, 10)

        assert views.truncated is False
        assert views.cursor.text == text

    def test_shrink_factor_is_monotone(self, budget: TruncationBudget):
        previous = 1.0
        for count in range(1, 6):
            _overflow(budget)
            entry = budget.entry("doc")
            assert entry is not None
            assert entry.shrink_factor == pytest.approx(0.9 ** (count + 1))
            assert entry.shrink_factor < previous
            assert entry.overflow_count == count
            previous = entry.shrink_factor

    def test_chars_per_prompt_unit_never_decreases(self, budget: TruncationBudget):
        _overflow(budget, prompt_size=9000)
        first = budget.entry("doc")
        _overflow(budget, prompt_size=4000)
        second = budget.entry("doc")
        _overflow(budget, prompt_size=20_000)
        third = budget.entry("doc")

        assert first is not None and second is not None and third is not None
        assert first.chars_per_prompt_unit == pytest.approx(9000 * 0.75 / 40_000)
        assert second.chars_per_prompt_unit == first.chars_per_prompt_unit
        assert third.chars_per_prompt_unit == pytest.approx(20_000 * 0.75 / 40_000)

    def test_cost_floor_and_minimum_prompt_length(self, budget: TruncationBudget):
        _overflow(budget, prompt_size=100, prompt_chars=100, document_chars=50)
        entry = budget.entry("doc")

        assert entry is not None
        assert entry.chars_per_prompt_unit == pytest.approx(0.1)
        share = 50 / 1024
        assert entry.non_document_prompt_size == pytest.approx(100 * (1 - share))

    def test_excluded_and_reserved(self, budget: TruncationBudget):
        _overflow(budget, excluded_chars=10_000, reserved_tokens=500)
        entry = budget.entry("doc")

        assert entry is not None
        assert entry.context_size == 8192 - 500
        assert entry.chars_per_prompt_unit == pytest.approx(9000 / 30_000)
        assert entry.non_document_prompt_size == pytest.approx(0.0)
        assert entry.last_overflow == ContextOverflow(context_size=8192, prompt_size=9000)

    def test_overflow_truncates_next_view(self, budget: TruncationBudget):
        text = "x" * 40_000
        _overflow(budget)
        entry = budget.entry("doc")
        assert entry is not None

        views = budget.get_view("doc", text, 0)

        assert views.truncated is True
        assert views.truncated_len == math.floor(entry.budget / entry.chars_per_prompt_unit)
        assert views.at_floor is False

    def test_views_shrink_with_each_overflow(self, budget: TruncationBudget):
        text = "x" * 40_000
        lengths = []
        for _ in range(3):
            _overflow(budget)
            lengths.append(budget.get_view("doc", text, 0).truncated_len)

        assert lengths == sorted(lengths, reverse=True)
        assert len(set(lengths)) == 3

    def test_budget_floor_marks_views(self):
        budget = TruncationBudget(TruncationConfig(min_view_chars=256))
        text = "x" * 40_000
        _overflow(budget, context_size=1000, prompt_size=100_000, document_chars=40_000, reserved_tokens=900)

        views = budget.get_view("doc", text, 0)

        assert views.at_floor is True
        assert views.truncated_len == 256
        entry = budget.entry("doc")
        assert entry is not None and entry.exhausted is False

    def test_overflow_at_floor_exhausts_entry(self, budget: TruncationBudget):
        _overflow(budget)
        _overflow(budget, at_floor=True)
        _overflow(budget)

        entry = budget.entry("doc")
        assert entry is not None
        assert entry.exhausted is True

    def test_reset_and_clear(self, budget: TruncationBudget):
        _overflow(budget, doc_id="a")
        _overflow(budget, doc_id="b")

        assert budget.reset("a") is True
        assert budget.reset("a") is False
        assert budget.clear() == 1
        assert len(budget) == 0

    def test_documents_are_independent(self, budget: TruncationBudget):
        _overflow(budget, doc_id="a")
        _overflow(budget, doc_id="a")
        _overflow(budget, doc_id="b")

        entry_a = budget.entry("a")
        entry_b = budget.entry("b")
        assert entry_a is not None and entry_b is not None
        assert entry_a.overflow_count == 2
        assert entry_b.overflow_count == 1
