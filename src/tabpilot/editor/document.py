"""Immutable document snapshots handed to the completion core."""

from __future__ import annotations

from dataclasses import dataclass, field

__all__ = [
    "DocumentSnapshot",
    "WindowSettings",
    "normalize_newlines",
    "line_start_offset",
    "line_of_offset",
]


def normalize_newlines(text: str) -> str:
    """Return ``text`` with CRLF and lone CR line endings converted to LF."""

    return text.replace("\r\n", "\n").replace("\r", "\n")


def line_start_offset(text: str, line: int) -> int:
    """Return the character offset where ``line`` (0-based) begins.

    Lines past the end of the document resolve to ``len(text)``.
    """

    if line <= 0:
        return 0
    offset = 0
    for _ in range(line):
        newline = text.find("\n", offset)
        if newline < 0:
            return len(text)
        offset = newline + 1
    return offset


def line_of_offset(text: str, offset: int) -> int:
    """Return the 0-based line containing character ``offset``."""

    offset = max(0, min(offset, len(text)))
    return text.count("\n", 0, offset)


@dataclass(slots=True, frozen=True)
class WindowSettings:
    """Line offsets around the cursor used to derive window bounds.

    Attributes:
        render_before_lines: Lines before the cursor in the inference target range.
        render_after_lines: Lines after the cursor in the inference target range.
        cache_before_lines: Lines before the cursor kept byte-stable for prompt caching.
        cache_after_lines: Lines after the cursor kept byte-stable for prompt caching.
    """

    render_before_lines: int = 0
    render_after_lines: int = 5
    cache_before_lines: int = 5
    cache_after_lines: int = 15


@dataclass(slots=True, frozen=True)
class DocumentSnapshot:
    """Document state captured for a single completion trigger.

    Attributes:
        doc_id: Stable document identity (usually a URI).
        text: Full document text with normalized line endings.
        cursor_line: 0-based cursor line.
        cursor_character: 0-based cursor column.
        version: Editor-provided document version.
        render_from_line: First line of the inference target range.
        render_to_line: Last line of the inference target range.
        cache_from_line: First line of the cache-stable window.
        cache_to_line: Last line of the cache-stable window.
    """

    doc_id: str
    text: str
    cursor_line: int
    cursor_character: int = 0
    version: int = 0
    render_from_line: int = 0
    render_to_line: int = 0
    cache_from_line: int = 0
    cache_to_line: int = 0
    language_id: str = field(default="", compare=False)

    @classmethod
    def capture(
        cls,
        doc_id: str,
        text: str,
        cursor_line: int,
        cursor_character: int = 0,
        *,
        version: int = 0,
        language_id: str = "",
        window: WindowSettings | None = None,
    ) -> "DocumentSnapshot":
        """Build a snapshot and derive its window bounds from ``window``."""

        if not doc_id:
            raise ValueError("doc_id is required")
        normalized = normalize_newlines(text)
        settings = window or WindowSettings()
        line_count = normalized.count("\n") + 1
        cursor_line = max(0, min(int(cursor_line), line_count - 1))

        def to_line(delta: int) -> int:
            return max(0, min(line_count - 1, cursor_line + delta))

        return cls(
            doc_id=doc_id,
            text=normalized,
            cursor_line=cursor_line,
            cursor_character=max(0, int(cursor_character)),
            version=version,
            render_from_line=to_line(-settings.render_before_lines),
            render_to_line=to_line(settings.render_after_lines),
            cache_from_line=to_line(-settings.cache_before_lines),
            cache_to_line=to_line(settings.cache_after_lines),
            language_id=language_id,
        )

    @property
    def line_count(self) -> int:
        return self.text.count("\n") + 1

    def lines(self) -> list[str]:
        return self.text.split("\n")
