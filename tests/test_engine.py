"""Tests for the completion engine: overflow feedback, supersession, lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from tabpilot.ai.ai_types import CompletionEndReason, ContextOverflow
from tabpilot.ai.cancellation import CancellationToken
from tabpilot.ai.checkpoints import CHECKPOINT_MARKER
from tabpilot.ai.client import ClientSettings, CompletionClient
from tabpilot.ai.context.truncation import AFTER_TRUNCATED_TEXT, TruncationBudget, TruncationConfig
from tabpilot.ai.context.window_cache import PromptWindowCache, WindowCacheConfig
from tabpilot.ai.engine import CompletionEngine, DocumentContext, PromptBundle
from tabpilot.editor.document import DocumentSnapshot

from helpers import OVERFLOW_BODY, FakeCompletionServer, sse


# =============================================================================
# Test Fixtures
# =============================================================================


class RecordingRenderer:
    def __init__(self) -> None:
        self.contexts: list[DocumentContext] = []

    def __call__(self, context: DocumentContext) -> PromptBundle:
        self.contexts.append(context)
        return PromptBundle(
            system="Complete the code.",
            user=f"Header{CHECKPOINT_MARKER}{context.window_text}",
            document_block=context.window_text,
        )


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def engine(server: FakeCompletionServer, client_settings: ClientSettings) -> CompletionEngine:
    client = CompletionClient(client_settings, transport=server.transport)
    return CompletionEngine(client_settings, client=client)


def large_snapshot(doc_id: str = "file:///big.py") -> DocumentSnapshot:
    text = "\n".join("x" * 79 for _ in range(500))
    return DocumentSnapshot.capture(doc_id, text, 250)


def seed_exhausted(engine: CompletionEngine, doc_id: str) -> None:
    engine.budget.record_overflow(doc_id, 8192, 9000, prompt_chars=1000, document_chars=900, at_floor=True)


# =============================================================================
# Completion flow
# =============================================================================


class TestComplete:
    @pytest.mark.asyncio
    async def test_basic_completion(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        server.queue(sse("    return 1\n"))
        completions: list[tuple[CompletionEndReason, str]] = []

        result = await engine.complete(
            snapshot,
            renderer,
            on_complete=lambda reason, text: completions.append((reason, text)),
        )

        assert result.text == "    return 1\n"
        assert result.reason is CompletionEndReason.STREAM_END
        assert completions == [(CompletionEndReason.STREAM_END, "    return 1\n")]
        assert renderer.contexts[0].truncated is False
        assert [len(payload["messages"]) for payload in server.primes] == [1, 2]
        assert engine.active_token is None

    @pytest.mark.asyncio
    async def test_async_renderer(self, engine: CompletionEngine, server: FakeCompletionServer, snapshot: DocumentSnapshot):
        async def render(context: DocumentContext) -> PromptBundle:
            await asyncio.sleep(0)
            return PromptBundle(system="s", user=context.window_text, stops=("\n\n",))

        result = await engine.complete(snapshot, render)

        assert result.reason is CompletionEndReason.STREAM_END
        assert server.completions[0]["stop"] == ["\n\n"]

    @pytest.mark.asyncio
    async def test_window_text_stable_while_cursor_inside(
        self,
        engine: CompletionEngine,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        await engine.complete(snapshot, renderer)
        moved = DocumentSnapshot.capture(snapshot.doc_id, snapshot.text, snapshot.cursor_line + 2)
        await engine.complete(moved, renderer)

        assert renderer.contexts[0].window_text == renderer.contexts[1].window_text

    @pytest.mark.asyncio
    async def test_transport_error(self, client_settings: ClientSettings, snapshot: DocumentSnapshot):
        server = FakeCompletionServer(connect_error=True)
        client = CompletionClient(client_settings, transport=server.transport)
        engine = CompletionEngine(client_settings, client=client)
        completions: list[CompletionEndReason] = []

        result = await engine.complete(
            snapshot,
            RecordingRenderer(),
            on_complete=lambda reason, _text: completions.append(reason),
        )

        assert result.reason is CompletionEndReason.ERROR
        assert completions == [CompletionEndReason.ERROR]


# =============================================================================
# Overflow feedback
# =============================================================================


class TestOverflowFeedback:
    @pytest.mark.asyncio
    async def test_overflow_truncates_next_request(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        renderer: RecordingRenderer,
    ):
        snap = large_snapshot()
        server.queue([OVERFLOW_BODY], status_code=400)

        first = await engine.complete(snap, renderer)
        second = await engine.complete(snap, renderer)

        assert first.reason is CompletionEndReason.EXCEED_CONTEXT_SIZE
        assert first.overflow == ContextOverflow(context_size=8192, prompt_size=9000)
        assert second.reason is CompletionEndReason.STREAM_END

        entry = engine.budget.entry(snap.doc_id)
        assert entry is not None and entry.overflow_count == 1
        assert renderer.contexts[1].truncated is True
        assert AFTER_TRUNCATED_TEXT in renderer.contexts[1].window_text
        first_user = server.completions[0]["messages"][1]["content"]
        second_user = server.completions[1]["messages"][1]["content"]
        assert len(second_user) < len(first_user)

    @pytest.mark.asyncio
    async def test_reserved_tokens_reduce_budget(self, server: FakeCompletionServer, client_settings: ClientSettings):
        client = CompletionClient(client_settings, transport=server.transport)
        engine = CompletionEngine(client_settings, client=client, reserved_tokens=1000)
        server.queue([OVERFLOW_BODY], status_code=400)

        await engine.complete(large_snapshot(), RecordingRenderer())

        entry = engine.budget.entry("file:///big.py")
        assert entry is not None
        assert entry.context_size == 8192 - 1000

    @pytest.mark.asyncio
    async def test_exhausted_document_is_not_sent(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        seed_exhausted(engine, snapshot.doc_id)
        completions: list[CompletionEndReason] = []

        result = await engine.complete(
            snapshot,
            renderer,
            on_complete=lambda reason, _text: completions.append(reason),
        )

        assert result.reason is CompletionEndReason.EXCEED_CONTEXT_SIZE
        assert result.overflow == ContextOverflow(context_size=8192, prompt_size=9000)
        assert completions == [CompletionEndReason.EXCEED_CONTEXT_SIZE]
        assert server.requests == []
        assert renderer.contexts == []

    @pytest.mark.asyncio
    async def test_invalidate_clears_exhaustion(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        seed_exhausted(engine, snapshot.doc_id)
        engine.invalidate(snapshot.doc_id)

        result = await engine.complete(snapshot, renderer)

        assert result.reason is CompletionEndReason.STREAM_END
        assert len(server.completions) == 1

    @pytest.mark.asyncio
    async def test_reconfigure_drops_budgets_and_client(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        await engine.complete(snapshot, renderer)
        seed_exhausted(engine, snapshot.doc_id)
        settings = ClientSettings(base_url="http://localhost:9090/v1")
        replacement = CompletionClient(settings, transport=server.transport)

        await engine.reconfigure(settings, client=replacement, reserved_tokens=64)

        assert engine.client is replacement
        assert len(engine.budget) == 0
        assert len(engine.window_cache) == 0
        result = await engine.complete(snapshot, renderer)
        assert result.reason is CompletionEndReason.STREAM_END


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_pre_cancelled_token(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        token = CancellationToken()
        token.cancel()

        result = await engine.complete(snapshot, renderer, token=token)

        assert result.reason is CompletionEndReason.ABORTED
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_new_request_supersedes_in_flight(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        hold = asyncio.Event()
        started = asyncio.Event()
        server.queue(sse("partial", done=False), hold=hold, started=started)
        server.queue(sse("fresh"))
        first_completions: list[CompletionEndReason] = []
        first_token = CancellationToken()

        first_task = asyncio.create_task(
            engine.complete(
                snapshot,
                renderer,
                token=first_token,
                on_complete=lambda reason, _text: first_completions.append(reason),
            )
        )
        await asyncio.wait_for(started.wait(), timeout=5)

        second = await engine.complete(snapshot, renderer)
        first = await asyncio.wait_for(first_task, timeout=5)
        hold.set()

        assert first.reason is CompletionEndReason.ABORTED
        assert first_completions == [CompletionEndReason.ABORTED]
        assert first_token.subscriber_count == 0
        assert second.text == "fresh"
        assert second.reason is CompletionEndReason.STREAM_END

    @pytest.mark.asyncio
    async def test_cancel_active(
        self,
        engine: CompletionEngine,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        hold = asyncio.Event()
        started = asyncio.Event()
        server.queue(sse("partial", done=False), hold=hold, started=started)

        assert engine.cancel_active() is False
        task = asyncio.create_task(engine.complete(snapshot, renderer))
        await asyncio.wait_for(started.wait(), timeout=5)

        assert engine.cancel_active() is True
        result = await asyncio.wait_for(task, timeout=5)
        hold.set()

        assert result.reason is CompletionEndReason.ABORTED
        assert engine.active_token is None


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    def test_empty_injected_stores_are_kept(self, client_settings: ClientSettings, server: FakeCompletionServer):
        cache = PromptWindowCache(WindowCacheConfig(ttl_seconds=5.0, start_marker="<<"))
        budget = TruncationBudget(TruncationConfig(min_view_chars=64))
        client = CompletionClient(client_settings, transport=server.transport)

        engine = CompletionEngine(client_settings, client=client, window_cache=cache, budget=budget)

        assert len(cache) == 0 and len(budget) == 0
        assert engine.window_cache is cache
        assert engine.budget is budget
        assert engine.client is client

    @pytest.mark.asyncio
    async def test_configured_markers_reach_the_prompt(
        self,
        client_settings: ClientSettings,
        server: FakeCompletionServer,
        snapshot: DocumentSnapshot,
        renderer: RecordingRenderer,
    ):
        cache = PromptWindowCache(WindowCacheConfig(start_marker="<<WINDOW>>", stop_marker="<</WINDOW>>"))
        client = CompletionClient(client_settings, transport=server.transport)
        engine = CompletionEngine(client_settings, client=client, window_cache=cache)

        await engine.complete(snapshot, renderer)

        assert "<<WINDOW>>" in renderer.contexts[0].window_text
        assert "<</WINDOW>>" in server.completions[0]["messages"][1]["content"]
