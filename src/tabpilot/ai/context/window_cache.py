"""Prompt window cache for byte-stable completion prompts.

Inference servers reuse their KV cache only for an exact prompt prefix. This
module keeps the rendered document excerpt identical between keystrokes for
as long as the cursor stays inside the cached window, so the leading bytes
of consecutive prompts match.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Sequence

from ...editor.document import DocumentSnapshot

__all__ = [
    "DEFAULT_START_MARKER",
    "DEFAULT_STOP_MARKER",
    "WindowCacheConfig",
    "PromptWindowCacheEntry",
    "WindowCacheStats",
    "PromptWindowCache",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_START_MARKER = "###START_EDITING_HERE###"
DEFAULT_STOP_MARKER = "###STOP_EDITING_HERE###"


# -----------------------------------------------------------------------------
# Cache Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class WindowCacheConfig:
    """Configuration for the prompt window cache.

    Attributes:
        max_entries: Maximum number of documents to cache.
        ttl_seconds: Time-to-live for cache entries in seconds (0 = no expiry).
        start_marker: Line inserted before the editable window.
        stop_marker: Line inserted after the editable window.
        track_stats: Whether to track cache statistics.
    """

    max_entries: int = 100
    ttl_seconds: float = 300.0  # 5 minutes default
    start_marker: str = DEFAULT_START_MARKER
    stop_marker: str = DEFAULT_STOP_MARKER
    track_stats: bool = True


# -----------------------------------------------------------------------------
# Cache Entry
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PromptWindowCacheEntry:
    """A rendered window excerpt and the bounds that produced it.

    Attributes:
        cache_from_line: First document line of the cached window.
        cache_to_line: Last document line of the cached window.
        rendered_text: The full rendered excerpt, markers included.
        window_start_line: Document line of the first row of the source view.
        valid_len: Opaque validity token (the truncation length in practice).
        timestamp: Monotonic creation time.
    """

    cache_from_line: int
    cache_to_line: int
    rendered_text: str
    window_start_line: int = 0
    valid_len: int = 0
    timestamp: float = field(default_factory=time.monotonic)

    def is_expired(self, ttl_seconds: float) -> bool:
        """Check if the entry has expired.

        Args:
            ttl_seconds: Time-to-live in seconds. 0 means no expiry.
        """
        if ttl_seconds <= 0:
            return False
        return time.monotonic() - self.timestamp > ttl_seconds

    def covers(self, cursor_line: int) -> bool:
        return self.cache_from_line <= cursor_line <= self.cache_to_line


# -----------------------------------------------------------------------------
# Cache Statistics
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class WindowCacheStats:
    """Statistics for cache operations."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "invalidations": self.invalidations,
            "total_requests": self.total_requests,
            "hit_rate": self.hit_rate,
        }


# -----------------------------------------------------------------------------
# Prompt Window Cache
# -----------------------------------------------------------------------------


class PromptWindowCache:
    """Thread-safe LRU cache of rendered prompt windows keyed by document.

    Example:
        >>> cache = PromptWindowCache()
        >>> text = cache.get_or_render(snapshot, views.cursor.text,
        ...                            window_start_line=views.cursor.start_line,
        ...                            valid_len=views.truncated_len)
    """

    def __init__(self, config: WindowCacheConfig | None = None) -> None:
        self._config = config or WindowCacheConfig()
        self._cache: OrderedDict[str, PromptWindowCacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._stats = WindowCacheStats() if self._config.track_stats else None

    @property
    def config(self) -> WindowCacheConfig:
        return self._config

    @property
    def stats(self) -> WindowCacheStats | None:
        return self._stats

    def lookup(self, doc_id: str, cursor_line: int, valid_len: int) -> str | None:
        """Return the cached window text for ``doc_id`` if it is still usable.

        A hit requires a live entry whose line range contains ``cursor_line``
        and whose ``valid_len`` matches exactly.
        """
        with self._lock:
            entry = self._cache.get(doc_id)
            if entry is None:
                self._record_miss()
                LOGGER.debug("Window cache miss: no entry (%s)", doc_id)
                return None

            if entry.is_expired(self._config.ttl_seconds):
                del self._cache[doc_id]
                if self._stats:
                    self._stats.expirations += 1
                self._record_miss()
                LOGGER.debug("Window cache miss: expired (%s)", doc_id)
                return None

            if not entry.covers(cursor_line):
                self._record_miss()
                LOGGER.debug(
                    "Window cache miss: cursor %d outside %d-%d (%s)",
                    cursor_line,
                    entry.cache_from_line,
                    entry.cache_to_line,
                    doc_id,
                )
                return None

            if entry.valid_len != valid_len:
                self._record_miss()
                LOGGER.debug(
                    "Window cache miss: valid_len %d != %d (%s)",
                    valid_len,
                    entry.valid_len,
                    doc_id,
                )
                return None

            self._cache.move_to_end(doc_id)
            if self._stats:
                self._stats.hits += 1
            return entry.rendered_text

    def store(
        self,
        doc_id: str,
        *,
        cache_from_line: int,
        cache_to_line: int,
        rendered_text: str,
        window_start_line: int = 0,
        valid_len: int = 0,
    ) -> PromptWindowCacheEntry:
        """Replace the cached window for ``doc_id``."""

        entry = PromptWindowCacheEntry(
            cache_from_line=cache_from_line,
            cache_to_line=cache_to_line,
            rendered_text=rendered_text,
            window_start_line=window_start_line,
            valid_len=valid_len,
        )
        with self._lock:
            if doc_id in self._cache:
                self._cache[doc_id] = entry
                self._cache.move_to_end(doc_id)
                return entry

            while len(self._cache) >= self._config.max_entries:
                evicted_id, _ = self._cache.popitem(last=False)
                if self._stats:
                    self._stats.evictions += 1
                LOGGER.debug("Evicted window cache entry for %s", evicted_id)

            self._cache[doc_id] = entry
        return entry

    def render(
        self,
        lines: Sequence[str],
        *,
        cache_from_line: int,
        cache_to_line: int,
        window_start_line: int = 0,
    ) -> str:
        """Slice ``lines`` into before/window/after and wrap the window in markers.

        ``lines`` is a view of the document whose first row is document line
        ``window_start_line``; the cache bounds are document lines.
        """

        count = len(lines)
        start = min(max(cache_from_line - window_start_line, 0), count)
        stop = min(max(cache_to_line - window_start_line, start), count)
        before = "\n".join(lines[:start])
        window = "\n".join(lines[start:stop])
        after = "\n".join(lines[stop:])
        return (
            f"{before}\n"
            f"{self._config.start_marker}\n"
            f"{window}\n"
            f"{self._config.stop_marker}\n"
            f"{after}"
        )

    def get_or_render(
        self,
        snapshot: DocumentSnapshot,
        view_text: str,
        *,
        window_start_line: int = 0,
        valid_len: int = 0,
    ) -> str:
        """Return the cached window for ``snapshot`` or render and cache a new one."""

        cached = self.lookup(snapshot.doc_id, snapshot.cursor_line, valid_len)
        if cached is not None:
            return cached

        rendered = self.render(
            view_text.split("\n"),
            cache_from_line=snapshot.cache_from_line,
            cache_to_line=snapshot.cache_to_line,
            window_start_line=window_start_line,
        )
        self.store(
            snapshot.doc_id,
            cache_from_line=snapshot.cache_from_line,
            cache_to_line=snapshot.cache_to_line,
            rendered_text=rendered,
            window_start_line=window_start_line,
            valid_len=valid_len,
        )
        LOGGER.debug(
            "Rendered window %d-%d for %s",
            snapshot.cache_from_line,
            snapshot.cache_to_line,
            snapshot.doc_id,
        )
        return rendered

    def entry(self, doc_id: str) -> PromptWindowCacheEntry | None:
        """Return the raw entry without touching statistics or LRU order."""
        with self._lock:
            return self._cache.get(doc_id)

    def invalidate(self, doc_id: str) -> bool:
        with self._lock:
            if doc_id in self._cache:
                del self._cache[doc_id]
                if self._stats:
                    self._stats.invalidations += 1
                LOGGER.debug("Invalidated window cache entry for %s", doc_id)
                return True
            return False

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            if self._stats:
                self._stats.invalidations += count
            return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries and return how many were dropped."""
        if self._config.ttl_seconds <= 0:
            return 0

        with self._lock:
            expired_ids = [
                doc_id
                for doc_id, entry in self._cache.items()
                if entry.is_expired(self._config.ttl_seconds)
            ]
            for doc_id in expired_ids:
                del self._cache[doc_id]
                if self._stats:
                    self._stats.expirations += 1
            if expired_ids:
                LOGGER.debug("Cleaned up %d expired window cache entries", len(expired_ids))
            return len(expired_ids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def _record_miss(self) -> None:
        if self._stats:
            self._stats.misses += 1
