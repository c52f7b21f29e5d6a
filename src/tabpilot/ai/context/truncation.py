"""Adaptive truncation budget for documents that overflow the context window.

The budget is learned per document from the server's own context-overflow
reports. Two ratchets drive it: the shrink factor only ever decreases and
the per-character prompt cost only ever increases, so a document that has
overflowed once is never re-expanded into another overflow.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any

from ...editor.document import line_of_offset, line_start_offset
from ..ai_types import ContextOverflow

__all__ = [
    "BEFORE_TRUNCATED_TEXT",
    "AFTER_TRUNCATED_TEXT",
    "TruncationConfig",
    "TruncationBudgetEntry",
    "DocumentView",
    "DocumentViews",
    "TruncationBudget",
    "truncate_views",
]

LOGGER = logging.getLogger(__name__)

BEFORE_TRUNCATED_TEXT = "### CODE TRUNCATED FOR LENGTH: PREVIOUS PART NOT INCLUDED ###"
AFTER_TRUNCATED_TEXT = "### CODE TRUNCATED FOR LENGTH: REMAINING PART NOT INCLUDED ###"

# Rows the cursor view header adds before the first document line.
_CURSOR_VIEW_HEADER_LINES = 2


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TruncationConfig:
    """Tuning knobs for the truncation ratchets.

    Attributes:
        initial_shrink_factor: Shrink factor of a freshly created entry.
        shrink_step: Multiplier applied on every recorded overflow.
        min_chars_per_prompt_unit: Floor for the learned per-character cost.
        min_prompt_chars: Floor for the prompt length used in cost estimates.
        min_view_chars: Smallest character budget a view is cut down to.
    """

    initial_shrink_factor: float = 0.9
    shrink_step: float = 0.9
    min_chars_per_prompt_unit: float = 0.1
    min_prompt_chars: int = 1024
    min_view_chars: int = 256


# -----------------------------------------------------------------------------
# Entries and views
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TruncationBudgetEntry:
    """Learned budget for one document.

    Attributes:
        context_size: Context window reported by the server, minus reserves.
        non_document_prompt_size: Prompt units spent on non-document text.
        chars_per_prompt_unit: Prompt units consumed per document character.
        shrink_factor: Safety multiplier on the available budget.
        overflow_count: Number of overflows recorded for the document.
        last_overflow: The most recent server report.
        exhausted: True once an overflow was recorded for a view already at
            the minimum size; no further request can fit.
        updated_at: Wall-clock time of the last update.
    """

    context_size: int
    non_document_prompt_size: float
    chars_per_prompt_unit: float
    shrink_factor: float
    overflow_count: int = 0
    last_overflow: ContextOverflow | None = None
    exhausted: bool = False
    updated_at: float = field(default_factory=time.time)

    @property
    def budget(self) -> float:
        """Prompt units available to document text."""
        return (self.context_size - self.non_document_prompt_size) * self.shrink_factor

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_size": self.context_size,
            "non_document_prompt_size": self.non_document_prompt_size,
            "chars_per_prompt_unit": self.chars_per_prompt_unit,
            "shrink_factor": self.shrink_factor,
            "overflow_count": self.overflow_count,
            "exhausted": self.exhausted,
            "budget": self.budget,
        }


@dataclass(slots=True, frozen=True)
class DocumentView:
    """A rendering of the document plus the document line of its first row."""

    text: str
    start_line: int = 0


@dataclass(slots=True, frozen=True)
class DocumentViews:
    """Head and cursor-centered renderings of a document.

    When ``truncated`` is False both views carry the full text.
    ``truncated_len`` is the character budget applied (0 when untruncated);
    ``at_floor`` marks a budget clamped up to ``min_view_chars``.
    """

    head: DocumentView
    cursor: DocumentView
    truncated: bool = False
    truncated_len: int = 0
    at_floor: bool = False

    @classmethod
    def full(cls, text: str) -> "DocumentViews":
        view = DocumentView(text=text, start_line=0)
        return cls(head=view, cursor=view)


def truncate_views(full_text: str, cursor_line: int, max_chars: int) -> DocumentViews:
    """Cut ``full_text`` down to ``max_chars`` around the head and the cursor.

    The cursor window is centered on the start of ``cursor_line``. When one
    edge runs past the document the window slides so the other edge absorbs
    the overflow, keeping the total width at ``max_chars``.
    """

    max_chars = max(0, int(max_chars))
    if len(full_text) <= max_chars:
        return DocumentViews.full(full_text)

    head = DocumentView(
        text=f"{full_text[:max_chars]}\n\n{AFTER_TRUNCATED_TEXT}",
        start_line=0,
    )

    cursor_offset = line_start_offset(full_text, cursor_line)
    start = cursor_offset - max_chars // 2
    end = cursor_offset + (max_chars - max_chars // 2)
    if end > len(full_text):
        start -= end - len(full_text)
        end = len(full_text)
    if start < 0:
        end = min(len(full_text), end - start)
        start = 0

    excerpt = full_text[start:end]
    cursor = DocumentView(
        text=f"{BEFORE_TRUNCATED_TEXT}\n\n{excerpt}\n\n{AFTER_TRUNCATED_TEXT}",
        start_line=line_of_offset(full_text, start) - _CURSOR_VIEW_HEADER_LINES,
    )
    return DocumentViews(head=head, cursor=cursor, truncated=True, truncated_len=max_chars)


# -----------------------------------------------------------------------------
# Budget store
# -----------------------------------------------------------------------------


class TruncationBudget:
    """Per-document store of learned truncation budgets.

    Example:
        >>> budget = TruncationBudget()
        >>> views = budget.get_view("file:///a.py", text, cursor_line=10)
        >>> if result.reason is CompletionEndReason.EXCEED_CONTEXT_SIZE:
        ...     budget.record_overflow("file:///a.py", 8192, 9000,
        ...                            prompt_chars=40_000, document_chars=30_000)
    """

    def __init__(self, config: TruncationConfig | None = None) -> None:
        self._config = config or TruncationConfig()
        self._entries: dict[str, TruncationBudgetEntry] = {}
        self._lock = threading.RLock()

    @property
    def config(self) -> TruncationConfig:
        return self._config

    def entry(self, doc_id: str) -> TruncationBudgetEntry | None:
        with self._lock:
            return self._entries.get(doc_id)

    def get_view(self, doc_id: str, full_text: str, cursor_line: int) -> DocumentViews:
        """Return head and cursor views of ``full_text`` that fit the learned budget."""

        entry = self.entry(doc_id)
        if entry is None:
            return DocumentViews.full(full_text)

        required = len(full_text) * entry.chars_per_prompt_unit
        if entry.budget >= required:
            return DocumentViews.full(full_text)

        max_chars = max(0, math.floor(entry.budget / entry.chars_per_prompt_unit))
        at_floor = max_chars < self._config.min_view_chars
        if at_floor:
            max_chars = self._config.min_view_chars
            LOGGER.debug(
                "Truncation budget for %s at its floor after %d overflow(s)",
                doc_id,
                entry.overflow_count,
            )
        views = truncate_views(full_text, cursor_line, max_chars)
        if at_floor:
            views = replace(views, at_floor=True)
        LOGGER.debug(
            "Truncated %s from %d to %d chars (shrink=%.4f)",
            doc_id,
            len(full_text),
            views.truncated_len,
            entry.shrink_factor,
        )
        return views

    def record_overflow(
        self,
        doc_id: str,
        context_size: int,
        prompt_size: int,
        *,
        prompt_chars: int,
        document_chars: int,
        excluded_chars: int = 0,
        reserved_tokens: int = 0,
        at_floor: bool = False,
    ) -> TruncationBudgetEntry:
        """Tighten the budget for ``doc_id`` after a context overflow.

        Args:
            doc_id: Document identity.
            context_size: Context window reported by the server.
            prompt_size: Prompt size reported by the server.
            prompt_chars: Characters across all messages of the rejected prompt.
            document_chars: Characters of document text inside that prompt.
            excluded_chars: Characters to leave out of the cost estimate.
            reserved_tokens: Context units held back for other prompt blocks.
            at_floor: The rejected prompt used a view clamped to ``min_view_chars``.

        Returns:
            The replacement entry.
        """

        config = self._config
        total_chars = max(config.min_prompt_chars, prompt_chars - excluded_chars)
        share = min(max(document_chars / total_chars, 0.0), 1.0)
        document_prompt_size = prompt_size * share
        observed_scale = (document_prompt_size / total_chars) or 1.0

        with self._lock:
            previous = self._entries.get(doc_id)
            if previous is None:
                shrink_factor = config.initial_shrink_factor * config.shrink_step
                scale = observed_scale
                count = 1
                exhausted = at_floor
            else:
                shrink_factor = previous.shrink_factor * config.shrink_step
                scale = max(previous.chars_per_prompt_unit, observed_scale)
                count = previous.overflow_count + 1
                exhausted = at_floor or previous.exhausted
            entry = TruncationBudgetEntry(
                context_size=context_size - reserved_tokens,
                non_document_prompt_size=prompt_size * (1.0 - share),
                chars_per_prompt_unit=max(config.min_chars_per_prompt_unit, scale),
                shrink_factor=shrink_factor,
                overflow_count=count,
                last_overflow=ContextOverflow(context_size=context_size, prompt_size=prompt_size),
                exhausted=exhausted,
            )
            self._entries[doc_id] = entry

        LOGGER.info(
            "Context overflow for %s (ctx=%d, prompt=%d); shrink factor now %.4f",
            doc_id,
            context_size,
            prompt_size,
            entry.shrink_factor,
        )
        return entry

    def reset(self, doc_id: str) -> bool:
        """Forget the learned budget for ``doc_id``."""

        with self._lock:
            return self._entries.pop(doc_id, None) is not None

    def clear(self) -> int:
        """Forget all learned budgets and return how many were dropped."""

        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            LOGGER.debug("Cleared %d truncation budget entries", count)
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
