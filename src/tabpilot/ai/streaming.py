"""State machine consuming a streamed chat-completion response body.

The consumer receives raw body chunks, splits them into lines (keeping the
trailing partial line across chunks), and ends in exactly one terminal
state. Server errors are read from the body rather than the HTTP status:
llama.cpp reports a context overflow as a JSON error envelope.
"""

from __future__ import annotations

import codecs
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping

import httpx

from .ai_types import CompletionEndReason, CompletionResult, ContextOverflow, HeartbeatProtocol

__all__ = [
    "StreamSession",
    "StreamConsumer",
    "UpdateCallback",
    "CompleteCallback",
    "parse_overflow",
]

LOGGER = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE_SENTINEL = "[DONE]"
_OVERFLOW_ERROR_TYPE = "exceed_context_size_error"

UpdateCallback = Callable[[str], Any]
CompleteCallback = Callable[[CompletionEndReason, str], Any]


def parse_overflow(payload: Mapping[str, Any]) -> ContextOverflow | None:
    """Extract a context overflow from an ``{"error": {...}}`` envelope."""

    error = payload.get("error")
    if not isinstance(error, Mapping):
        return None
    if error.get("code") != 400 or error.get("type") != _OVERFLOW_ERROR_TYPE:
        return None
    try:
        context_size = int(error.get("n_ctx") or 0)
        prompt_size = int(error.get("n_prompt_tokens") or 0)
    except (TypeError, ValueError):
        return None
    if context_size <= 0 or prompt_size <= 0:
        return None
    return ContextOverflow(context_size=context_size, prompt_size=prompt_size)


def _delta_text(payload: Any) -> str:
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        return ""
    choice = choices[0]
    delta = choice.get("delta")
    if isinstance(delta, Mapping):
        content = delta.get("content")
        if isinstance(content, str) and content:
            return content
    text = choice.get("text")
    return text if isinstance(text, str) else ""


@dataclass(slots=True)
class StreamSession:
    """Mutable state of one response body."""

    text: str = ""
    line_count: int = 0
    started_at: float = field(default_factory=time.monotonic)
    first_byte_at: float | None = None
    finished: bool = False
    reason: CompletionEndReason | None = None
    overflow: ContextOverflow | None = None

    @property
    def time_to_first_byte(self) -> float | None:
        if self.first_byte_at is None:
            return None
        return self.first_byte_at - self.started_at


class StreamConsumer:
    """Parse an SSE chat-completion body into a :class:`CompletionResult`.

    Args:
        max_lines: Stop once this many newlines were generated (``None`` or 0 = unlimited).
        on_update: Receives the accumulated text after every delta; returning
            ``False`` stops the stream.
        on_complete: Receives the terminal reason and final text exactly once.
        is_cancelled: Polled before the first chunk and before each chunk.
        heartbeat: Notified on every received chunk.
        label: Request label used in log lines.
    """

    def __init__(
        self,
        *,
        max_lines: int | None = None,
        on_update: UpdateCallback | None = None,
        on_complete: CompleteCallback | None = None,
        is_cancelled: Callable[[], bool] | None = None,
        heartbeat: HeartbeatProtocol | None = None,
        label: str = "",
    ) -> None:
        self._max_lines = max_lines or 0
        self._on_update = on_update
        self._on_complete = on_complete
        self._is_cancelled = is_cancelled
        self._heartbeat = heartbeat
        self._label = label
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.session = StreamSession()

    @property
    def finished(self) -> bool:
        return self.session.finished

    @property
    def reason(self) -> CompletionEndReason | None:
        return self.session.reason

    def result(self) -> CompletionResult:
        session = self.session
        reason = session.reason or CompletionEndReason.ERROR
        text = "" if reason is CompletionEndReason.ERROR else session.text
        return CompletionResult(text=text, reason=reason, overflow=session.overflow)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def begin(self) -> bool:
        """Check cancellation before any data arrives; False when already finished."""

        if self.finished:
            return False
        if self._cancel_requested():
            self._finalize(CompletionEndReason.ABORTED)
            return False
        return True

    def feed(self, chunk: bytes | str) -> bool:
        """Process one body chunk; return False once the stream is terminal."""

        if self.finished:
            return False
        if self._heartbeat is not None:
            self._heartbeat.beat()
        session = self.session
        if session.first_byte_at is None:
            session.first_byte_at = time.monotonic()
            LOGGER.debug(
                "Time to first data %s: %.0fms",
                self._label or "(request)",
                (session.first_byte_at - session.started_at) * 1000,
            )
        if self._cancel_requested():
            self._finalize(CompletionEndReason.ABORTED)
            return False

        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        self._process_lines(lines)
        return not self.finished

    def finish(self) -> CompletionResult:
        """End of body: drain the residual buffer, then finalize as ``streamEnd``."""

        if not self.finished:
            self._buffer += self._decoder.decode(b"", final=True)
            residual, self._buffer = self._buffer, ""
            self._process_lines(residual.split("\n"))
            self._finalize(CompletionEndReason.STREAM_END)
        return self.result()

    def abort(self) -> CompletionResult:
        self._finalize(CompletionEndReason.ABORTED)
        return self.result()

    def fail(self, exc: BaseException | None = None) -> CompletionResult:
        if not self.finished and exc is not None:
            LOGGER.error("Completion stream %s failed: %s", self._label or "(request)", exc)
        self._finalize(CompletionEndReason.ERROR)
        return self.result()

    async def consume(self, chunks: AsyncIterator[bytes]) -> CompletionResult:
        """Drive the state machine from an async byte iterator."""

        if not self.begin():
            return self.result()
        try:
            async for chunk in chunks:
                if not self.feed(chunk):
                    break
        except (httpx.HTTPError, OSError) as exc:
            return self.fail(exc)
        return self.finish()

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------
    def _process_lines(self, lines: list[str]) -> None:
        for line in lines:
            if self.finished:
                return
            self._process_line(line.rstrip("\r"))

    def _process_line(self, line: str) -> None:
        if not line.strip():
            return
        if line.startswith(_DATA_PREFIX):
            data = line[len(_DATA_PREFIX):]
            if data.strip() == _DONE_SENTINEL:
                self._finalize(CompletionEndReason.STREAM_END)
                return
            payload = self._parse_json(data)
            if payload is None:
                return
            content = _delta_text(payload)
            if content:
                self._append(content)
            elif isinstance(payload, Mapping) and "error" in payload:
                self._handle_error(payload)
            return
        if line.lstrip().startswith("{"):
            payload = self._parse_json(line)
            if isinstance(payload, Mapping) and "error" in payload:
                self._handle_error(payload)

    def _append(self, content: str) -> None:
        session = self.session
        session.text += content
        stop_requested = False
        if self._on_update is not None and self._on_update(session.text) is False:
            stop_requested = True
        session.line_count += content.count("\n")
        if stop_requested or (self._max_lines and self._max_lines <= session.line_count):
            self._finalize(CompletionEndReason.MAX_LINES)

    def _handle_error(self, payload: Mapping[str, Any]) -> None:
        overflow = parse_overflow(payload)
        if overflow is not None:
            self.session.overflow = overflow
            LOGGER.info(
                "Server rejected prompt for context size: %s",
                overflow.to_dict(),
            )
            self._finalize(CompletionEndReason.EXCEED_CONTEXT_SIZE)
            return
        LOGGER.warning("Server returned an error body: %s", payload.get("error"))
        self._finalize(CompletionEndReason.ERROR)

    @staticmethod
    def _parse_json(data: str) -> Any | None:
        # A JSON payload spread over several lines is dropped.
        try:
            return json.loads(data)
        except ValueError:
            return None

    def _cancel_requested(self) -> bool:
        return bool(self._is_cancelled is not None and self._is_cancelled())

    def _finalize(self, reason: CompletionEndReason) -> None:
        session = self.session
        if session.finished:
            return
        session.finished = True
        session.reason = reason
        if self._on_complete is None:
            return
        try:
            self._on_complete(reason, session.text)
        except Exception:
            LOGGER.warning("Completion callback raised", exc_info=True)
