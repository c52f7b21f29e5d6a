"""Heartbeat file touched while completions stream from a local server.

A process supervisor that spawned the inference server reads the file's
modification time to decide whether the server is idle and may be stopped.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable

__all__ = ["KeepaliveFile", "NullHeartbeat"]

LOGGER = logging.getLogger(__name__)


class NullHeartbeat:
    """Heartbeat that records nothing."""

    def beat(self) -> None:
        return None


class KeepaliveFile:
    """Touch ``path`` at most once per ``interval`` seconds.

    Example:
        >>> heartbeat = KeepaliveFile(Path("~/.tabpilot/server.hb").expanduser())
        >>> client = CompletionClient(settings, heartbeat=heartbeat)
    """

    def __init__(
        self,
        path: Path,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = path
        self._interval = max(0.0, interval)
        self._clock = clock
        self._last_beat: float | None = None
        self._beats = 0
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def beats(self) -> int:
        """Number of beats that reached the file."""
        with self._lock:
            return self._beats

    def beat(self) -> None:
        now = self._clock()
        with self._lock:
            if self._last_beat is not None and now - self._last_beat < self._interval:
                return
            self._last_beat = now
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.touch()
        except OSError as exc:
            LOGGER.debug("Keepalive update failed for %s: %s", self._path, exc)
            return
        with self._lock:
            self._beats += 1

    def is_alive(self, idle_seconds: float) -> bool:
        """True when the file was touched within the last ``idle_seconds``."""

        try:
            modified = self._path.stat().st_mtime
        except OSError as exc:
            LOGGER.debug("Keepalive check failed for %s: %s", self._path, exc)
            return False
        return time.time() - modified <= idle_seconds

    def remove(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.debug("Keepalive removal failed for %s: %s", self._path, exc)
