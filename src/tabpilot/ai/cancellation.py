"""Cooperative cancellation tokens for in-flight completion requests."""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Callable, Iterator

__all__ = ["CancellationToken"]

LOGGER = logging.getLogger(__name__)

CancelCallback = Callable[[], None]


class CancellationToken:
    """Flag plus callbacks fired once when a request is superseded.

    Subscriptions are scoped: use :meth:`subscribe` as a context manager so
    the callback is released on every exit path.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[CancelCallback] = []
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def cancel(self) -> None:
        """Mark the token cancelled and fire registered callbacks once."""

        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks are host code
                LOGGER.debug("Cancellation callback failed", exc_info=True)

    @contextlib.contextmanager
    def subscribe(self, callback: CancelCallback) -> Iterator["CancellationToken"]:
        """Register ``callback`` for the duration of the ``with`` block.

        If the token is already cancelled the callback fires immediately.
        """

        with self._lock:
            already = self._cancelled
            if not already:
                self._callbacks.append(callback)
        if already:
            callback()
        try:
            yield self
        finally:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

    def __call__(self) -> bool:
        return self._cancelled
