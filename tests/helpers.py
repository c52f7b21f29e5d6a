"""Fakes shared by the completion tests."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Sequence

import httpx

OVERFLOW_BODY = (
    b'{"error":{"code":400,"type":"exceed_context_size_error",'
    b'"n_ctx":8192,"n_prompt_tokens":9000}}'
)


def sse(*deltas: str, done: bool = True) -> list[bytes]:
    """Build one SSE chunk per delta, optionally followed by the DONE sentinel."""

    chunks = [
        f"data: {json.dumps({'choices': [{'delta': {'content': delta}}]}, ensure_ascii=False)}\n\n".encode("utf-8")
        for delta in deltas
    ]
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


async def iterate(chunks: Iterable[bytes], *, error: Exception | None = None) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


class RecordingHeartbeat:
    def __init__(self) -> None:
        self.beats = 0

    def beat(self) -> None:
        self.beats += 1


@dataclass
class StreamReply:
    chunks: Sequence[bytes]
    status_code: int = 200
    hold: asyncio.Event | None = None
    started: asyncio.Event | None = None


@dataclass
class FakeCompletionServer:
    """Answers priming posts with JSON and streamed posts with queued replies."""

    prime_status: int = 200
    connect_error: bool = False
    requests: list[dict[str, Any]] = field(default_factory=list)
    headers: list[httpx.Headers] = field(default_factory=list)
    replies: list[StreamReply] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    @property
    def primes(self) -> list[dict[str, Any]]:
        return [payload for payload in self.requests if not payload.get("stream")]

    @property
    def completions(self) -> list[dict[str, Any]]:
        return [payload for payload in self.requests if payload.get("stream")]

    def queue(
        self,
        chunks: Sequence[bytes],
        *,
        status_code: int = 200,
        hold: asyncio.Event | None = None,
        started: asyncio.Event | None = None,
    ) -> None:
        self.replies.append(StreamReply(list(chunks), status_code, hold, started))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if self.connect_error:
            raise httpx.ConnectError("connection refused", request=request)
        payload = json.loads(request.content)
        self.requests.append(payload)
        self.headers.append(request.headers)
        if not payload.get("stream"):
            return httpx.Response(
                self.prime_status,
                json={"choices": [{"message": {"role": "assistant", "content": ""}}]},
            )
        reply = self.replies.pop(0) if self.replies else StreamReply(sse())
        return httpx.Response(reply.status_code, content=_stream(reply))


async def _stream(reply: StreamReply) -> AsyncIterator[bytes]:
    for chunk in reply.chunks:
        yield chunk
    if reply.started is not None:
        reply.started.set()
    if reply.hold is not None:
        await reply.hold.wait()
