"""Tests for document snapshots and line helpers."""

from __future__ import annotations

import pytest

from tabpilot.editor.document import (
    DocumentSnapshot,
    WindowSettings,
    line_of_offset,
    line_start_offset,
    normalize_newlines,
)


def _numbered(count: int) -> str:
    return "\n".join(str(index) for index in range(count))


class TestLineHelpers:
    def test_normalize_newlines(self):
        assert normalize_newlines("a\r\nb\rc\n") == "a\nb\nc\n"

    def test_line_start_offset(self):
        text = "ab\ncd\nef"
        assert line_start_offset(text, 0) == 0
        assert line_start_offset(text, 1) == 3
        assert line_start_offset(text, 2) == 6
        assert line_start_offset(text, 9) == len(text)
        assert line_start_offset(text, -3) == 0

    def test_line_of_offset(self):
        text = "ab\ncd\nef"
        assert line_of_offset(text, 0) == 0
        assert line_of_offset(text, 3) == 1
        assert line_of_offset(text, 7) == 2
        assert line_of_offset(text, 1000) == 2


class TestDocumentSnapshot:
    def test_default_window_bounds(self):
        snap = DocumentSnapshot.capture("doc", _numbered(100), 50)

        assert (snap.render_from_line, snap.render_to_line) == (50, 55)
        assert (snap.cache_from_line, snap.cache_to_line) == (45, 65)

    def test_bounds_clamped_to_document(self):
        snap = DocumentSnapshot.capture("doc", _numbered(10), 2)

        assert snap.cache_from_line == 0
        assert snap.cache_to_line == 9
        assert snap.render_to_line == 7

    def test_cursor_clamped(self):
        snap = DocumentSnapshot.capture("doc", _numbered(3), 40, -5)

        assert snap.cursor_line == 2
        assert snap.cursor_character == 0

    def test_custom_window_settings(self):
        window = WindowSettings(render_before_lines=1, render_after_lines=2, cache_before_lines=3, cache_after_lines=4)
        snap = DocumentSnapshot.capture("doc", _numbered(100), 10, window=window)

        assert (snap.render_from_line, snap.render_to_line) == (9, 12)
        assert (snap.cache_from_line, snap.cache_to_line) == (7, 14)

    def test_crlf_text_normalized(self):
        snap = DocumentSnapshot.capture("doc", "a\r\nb\r\nc", 1)

        assert snap.text == "a\nb\nc"
        assert snap.line_count == 3
        assert snap.lines() == ["a", "b", "c"]

    def test_requires_doc_id(self):
        with pytest.raises(ValueError):
            DocumentSnapshot.capture("", "text", 0)

    def test_frozen(self):
        snap = DocumentSnapshot.capture("doc", "text", 0)
        with pytest.raises(AttributeError):
            snap.text = "other"  # type: ignore[misc]
