"""Per-trigger completion orchestration.

The engine turns a document snapshot into a document context (truncated
views plus the cached prompt window), lets the host render a prompt bundle
from it, sends the bundle, and feeds context overflows back into the
truncation budget for the next request on the same document.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from ..editor.document import DocumentSnapshot
from .ai_types import CompletionEndReason, CompletionResult, ContextOverflow, HeartbeatProtocol
from .cancellation import CancellationToken
from .checkpoints import CHECKPOINT_MARKER, ChatMessage
from .client import ClientSettings, CompletionClient, TransportErrorHook
from .context.truncation import DocumentViews, TruncationBudget
from .context.window_cache import PromptWindowCache
from .streaming import CompleteCallback, UpdateCallback

__all__ = [
    "PromptBundle",
    "DocumentContext",
    "PromptRenderer",
    "CompletionEngine",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PromptBundle:
    """Rendered prompt text for one request.

    ``system``/``user``/``assistant`` may contain the checkpoint marker.
    ``document_block`` is the document text as it appears in the prompt and
    ``excluded_block`` is text left out of the document cost estimate (for
    example a symbol listing); both only feed overflow accounting.
    """

    system: str
    user: str
    assistant: str = ""
    document_block: str = ""
    excluded_block: str = ""
    stops: tuple[str, ...] = ()

    def messages(self, marker: str = CHECKPOINT_MARKER) -> list[ChatMessage]:
        messages = [
            ChatMessage.from_marked("system", self.system, marker),
            ChatMessage.from_marked("user", self.user, marker),
        ]
        if self.assistant:
            messages.append(ChatMessage.from_marked("assistant", self.assistant, marker))
        return messages

    def prompt_chars(self, marker: str = CHECKPOINT_MARKER) -> int:
        return sum(len(message.content) for message in self.messages(marker))


@dataclass(slots=True, frozen=True)
class DocumentContext:
    """Everything a renderer needs to build the prompt for one snapshot."""

    snapshot: DocumentSnapshot
    views: DocumentViews
    window_text: str

    @property
    def truncated(self) -> bool:
        return self.views.truncated

    @property
    def at_floor(self) -> bool:
        return self.views.at_floor

    @property
    def window_start_line(self) -> int:
        return self.views.cursor.start_line


PromptRenderer = Callable[[DocumentContext], Union[PromptBundle, Awaitable[PromptBundle]]]


class CompletionEngine:
    """Runs one completion at a time against a :class:`CompletionClient`.

    A new :meth:`complete` call supersedes the request in flight by
    cancelling its token; the superseded call resolves as ``aborted``.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: CompletionClient | None = None,
        window_cache: PromptWindowCache | None = None,
        budget: TruncationBudget | None = None,
        heartbeat: HeartbeatProtocol | None = None,
        on_transport_error: TransportErrorHook | None = None,
        reserved_tokens: int = 0,
    ) -> None:
        self._heartbeat = heartbeat
        self._on_transport_error = on_transport_error
        self._client = client if client is not None else self._build_client(settings)
        self._window_cache = window_cache if window_cache is not None else PromptWindowCache()
        self._budget = budget if budget is not None else TruncationBudget()
        self._reserved_tokens = max(0, int(reserved_tokens))
        self._active: CancellationToken | None = None

    @property
    def client(self) -> CompletionClient:
        return self._client

    @property
    def window_cache(self) -> PromptWindowCache:
        return self._window_cache

    @property
    def budget(self) -> TruncationBudget:
        return self._budget

    @property
    def active_token(self) -> CancellationToken | None:
        return self._active

    def build_context(self, snapshot: DocumentSnapshot) -> DocumentContext:
        views = self._budget.get_view(snapshot.doc_id, snapshot.text, snapshot.cursor_line)
        window_text = self._window_cache.get_or_render(
            snapshot,
            views.cursor.text,
            window_start_line=views.cursor.start_line,
            valid_len=views.truncated_len,
        )
        return DocumentContext(snapshot=snapshot, views=views, window_text=window_text)

    async def complete(
        self,
        snapshot: DocumentSnapshot,
        renderer: PromptRenderer,
        *,
        on_update: UpdateCallback | None = None,
        on_complete: CompleteCallback | None = None,
        token: CancellationToken | None = None,
    ) -> CompletionResult:
        """Run one completion for ``snapshot``.

        Args:
            snapshot: The document state at trigger time.
            renderer: Builds the prompt bundle from the document context.
            on_update: Receives partial text; returning ``False`` stops.
            on_complete: Receives the terminal reason and text exactly once.
            token: Cancellation token for this request; a fresh one is
                created when omitted.

        Returns:
            The completion result. Transport failures resolve as ``error``.
        """

        token = token if token is not None else CancellationToken()
        previous, self._active = self._active, token
        if previous is not None and previous is not token:
            LOGGER.debug("Superseding in-flight completion")
            previous.cancel()

        fired = False

        def finish(reason: CompletionEndReason, text: str) -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            if on_complete is not None:
                on_complete(reason, text)

        try:
            return await self._complete(snapshot, renderer, token, on_update, finish)
        finally:
            if self._active is token:
                self._active = None

    async def _complete(
        self,
        snapshot: DocumentSnapshot,
        renderer: PromptRenderer,
        token: CancellationToken,
        on_update: UpdateCallback | None,
        finish: CompleteCallback,
    ) -> CompletionResult:
        if token.is_cancelled:
            return self._aborted(finish)

        entry = self._budget.entry(snapshot.doc_id)
        if entry is not None and entry.exhausted and entry.last_overflow is not None:
            LOGGER.info(
                "Document %s still exceeds the context after %d overflow(s); not sending",
                snapshot.doc_id,
                entry.overflow_count,
            )
            finish(CompletionEndReason.EXCEED_CONTEXT_SIZE, "")
            return CompletionResult(
                text="",
                reason=CompletionEndReason.EXCEED_CONTEXT_SIZE,
                overflow=entry.last_overflow,
            )

        context = self.build_context(snapshot)
        bundle = renderer(context)
        if inspect.isawaitable(bundle):
            bundle = await bundle
        if token.is_cancelled:
            return self._aborted(finish)

        marker = self._client.settings.checkpoint_marker
        loop = asyncio.get_running_loop()
        request = asyncio.ensure_future(
            self._client.stream_completion(
                bundle.messages(marker),
                stops=bundle.stops or None,
                on_update=on_update,
                on_complete=finish,
                is_cancelled=token,
            )
        )

        def force_close() -> None:
            loop.call_soon_threadsafe(request.cancel)

        with token.subscribe(force_close):
            try:
                result = await request
            except asyncio.CancelledError:
                if not token.is_cancelled:
                    raise
                return self._aborted(finish)

        if result.reason is CompletionEndReason.EXCEED_CONTEXT_SIZE and result.overflow is not None:
            self._record_overflow(context, bundle, marker, result.overflow)
        return result

    def _record_overflow(
        self,
        context: DocumentContext,
        bundle: PromptBundle,
        marker: str,
        overflow: ContextOverflow,
    ) -> None:
        prompt_chars = bundle.prompt_chars(marker)
        self._budget.record_overflow(
            context.snapshot.doc_id,
            overflow.context_size,
            overflow.prompt_size,
            prompt_chars=prompt_chars,
            document_chars=len(bundle.document_block) or prompt_chars,
            excluded_chars=len(bundle.excluded_block),
            reserved_tokens=self._reserved_tokens,
            at_floor=context.at_floor,
        )

    @staticmethod
    def _aborted(finish: CompleteCallback) -> CompletionResult:
        finish(CompletionEndReason.ABORTED, "")
        return CompletionResult(text="", reason=CompletionEndReason.ABORTED)

    def cancel_active(self) -> bool:
        """Cancel the request in flight, if any."""

        token = self._active
        if token is None:
            return False
        token.cancel()
        return True

    def invalidate(self, doc_id: str) -> None:
        """Forget everything cached for a closed document."""

        self._window_cache.invalidate(doc_id)
        self._budget.reset(doc_id)

    async def reconfigure(
        self,
        settings: ClientSettings,
        *,
        client: CompletionClient | None = None,
        reserved_tokens: int | None = None,
    ) -> None:
        """Swap the client for new settings and drop every learned budget."""

        self.cancel_active()
        previous = self._client
        self._client = client if client is not None else self._build_client(settings)
        if reserved_tokens is not None:
            self._reserved_tokens = max(0, int(reserved_tokens))
        dropped = self._budget.clear()
        windows = self._window_cache.invalidate_all()
        LOGGER.info(
            "Reconfigured completion engine for %s (dropped %d budget(s), %d window(s))",
            settings.base_url,
            dropped,
            windows,
        )
        if previous is not self._client:
            await previous.aclose()

    async def aclose(self) -> None:
        self.cancel_active()
        await self._client.aclose()

    def _build_client(self, settings: ClientSettings) -> CompletionClient:
        return CompletionClient(
            settings,
            heartbeat=self._heartbeat,
            on_transport_error=self._on_transport_error,
        )
