"""Async client for OpenAI-compatible completion servers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Sequence
from urllib.parse import urlparse

import httpx
from openai import AsyncOpenAI, OpenAIError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..utils.logging import log_payload
from .ai_types import CompletionResult, HeartbeatProtocol
from .checkpoints import (
    CHECKPOINT_MARKER,
    ChatMessage,
    CheckpointState,
    PrefixMessages,
    coerce_messages,
    plan_checkpoints,
    strip_checkpoints,
)
from .streaming import CompleteCallback, StreamConsumer, UpdateCallback

__all__ = [
    "ClientSettings",
    "CompletionClient",
    "ServerUnavailableError",
    "TransportErrorHook",
    "is_localhost",
]

LOGGER = logging.getLogger(__name__)

_COMPLETIONS_PATH = "chat/completions"
_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
# The OpenAI SDK refuses to build without a key; local servers ignore it.
_PLACEHOLDER_API_KEY = "no-key"

TransportErrorHook = Callable[[str], Awaitable[Any]]


class ServerUnavailableError(RuntimeError):
    """Raised while polling a server that does not answer yet."""


def is_localhost(url: str) -> bool:
    """Return True when ``url`` points at the local machine."""

    try:
        host = urlparse(url).hostname
    except ValueError:
        return False
    return (host or "").lower() in _LOCAL_HOSTS


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the completion client."""

    base_url: str = "http://localhost:8080/v1"
    api_key: str = ""
    model: str = ""
    max_tokens: int = 256
    max_lines: int = 15
    temperature: float = 0.1
    top_p: float = -1.0
    top_k: int = -1
    request_timeout: float | None = 30.0
    models_timeout: float = 0.5
    readiness_attempts: int = 20
    readiness_interval: float = 0.5
    checkpoint_marker: str = CHECKPOINT_MARKER
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class CompletionClient:
    """Streams chat completions and keeps the server's prefix cache primed.

    One instance is one logical connection: it owns the checkpoint state of
    the prefixes it has primed.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        models_client: AsyncOpenAI | None = None,
        heartbeat: HeartbeatProtocol | None = None,
        on_transport_error: TransportErrorHook | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client or self._build_http_client(settings, transport)
        self._models_client = models_client
        self._heartbeat = heartbeat
        self._on_transport_error = on_transport_error
        self._checkpoints = CheckpointState()
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def checkpoints(self) -> CheckpointState:
        return self._checkpoints

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    async def stream_completion(
        self,
        messages: Iterable[ChatMessage | Mapping[str, Any]],
        *,
        max_lines: int | None = None,
        max_tokens: int | None = None,
        stops: Sequence[str] | None = None,
        on_update: UpdateCallback | None = None,
        on_complete: CompleteCallback | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> CompletionResult:
        """Prime checkpoints, then stream a completion for ``messages``.

        Never raises for transport or server failures; those end the result
        with ``error`` (or ``exceedContextSize`` for a context overflow).
        """

        cancelled = is_cancelled or _never_cancelled
        consumer = StreamConsumer(
            max_lines=self._settings.max_lines if max_lines is None else max_lines,
            on_update=on_update,
            on_complete=on_complete,
            is_cancelled=cancelled,
            heartbeat=self._heartbeat,
            label=self._settings.model or self._settings.base_url,
        )
        if cancelled():
            return consumer.abort()

        chat = coerce_messages(messages, marker=self._settings.checkpoint_marker)
        await self.prime(chat, is_cancelled=cancelled)
        if not consumer.begin():
            return consumer.result()

        payload = self._build_chat_payload(
            strip_checkpoints(chat),
            max_tokens=self._settings.max_tokens if max_tokens is None else max_tokens,
            stream=True,
            stops=stops,
        )
        LOGGER.debug(
            "Starting streamed completion via %s with %s message(s)",
            self._settings.model or "(default model)",
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            log_payload("completion", payload)

        self._beat()
        try:
            async with self._http.stream("POST", _COMPLETIONS_PATH, json=payload) as response:
                if response.status_code >= 400:
                    LOGGER.debug("Completion request returned HTTP %s", response.status_code)
                return await consumer.consume(response.aiter_bytes())
        except (httpx.HTTPError, OSError) as exc:
            result = consumer.fail(exc)
            await self._handle_transport_error(exc)
            return result

    async def prime(
        self,
        messages: Sequence[ChatMessage],
        *,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> int:
        """Send one ``max_tokens=1`` request per cold checkpoint prefix.

        Requests run strictly in order. The first failure stops priming for
        this call; it is logged and otherwise ignored. Returns the number of
        prefixes primed successfully.
        """

        cancelled = is_cancelled or _never_cancelled
        primed = 0
        for prefix in plan_checkpoints(messages):
            if cancelled():
                break
            if self._checkpoints.covers(prefix):
                continue
            payload = self._build_chat_payload(_prefix_payload(prefix), max_tokens=1, stream=False)
            if self._settings.debug_logging:
                log_payload("prime", payload)
            self._beat()
            try:
                response = await self._http.post(_COMPLETIONS_PATH, json=payload)
                response.raise_for_status()
            except (httpx.HTTPError, OSError) as exc:
                LOGGER.warning("Checkpoint priming failed; skipping remaining prefixes: %s", exc)
                break
            self._checkpoints.commit(prefix)
            primed += 1
        if primed:
            LOGGER.debug("Primed %d checkpoint prefix(es)", primed)
        return primed

    # ------------------------------------------------------------------
    # Server status
    # ------------------------------------------------------------------
    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the model identifiers served by the endpoint (empty on failure)."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)
            try:
                models = await self._fetch_models()
            except (OpenAIError, httpx.HTTPError) as exc:
                LOGGER.debug("Model listing failed for %s: %s", self._settings.base_url, exc)
                return []
            self._models_cache = models
            return list(models)

    async def is_active(self) -> bool:
        """True when the server answers a model listing request."""

        try:
            await self._fetch_models()
        except (OpenAIError, httpx.HTTPError):
            return False
        return True

    async def wait_until_active(
        self,
        *,
        attempts: int | None = None,
        interval: float | None = None,
    ) -> bool:
        """Poll :meth:`is_active` until the server answers or attempts run out."""

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, attempts or self._settings.readiness_attempts)),
            wait=wait_fixed(self._settings.readiness_interval if interval is None else interval),
            retry=retry_if_exception_type(ServerUnavailableError),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if not await self.is_active():
                        raise ServerUnavailableError(self._settings.base_url)
        except ServerUnavailableError:
            LOGGER.warning("Server at %s did not become ready", self._settings.base_url)
            return False
        return True

    async def aclose(self) -> None:
        """Close the underlying HTTP clients to release network resources."""

        for client in (self._http, self._models_client):
            close = getattr(client, "aclose", None) or getattr(client, "close", None)
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_http_client(
        self,
        settings: ClientSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            headers=self._build_headers(settings),
            transport=transport,
        )

    @staticmethod
    def _build_headers(settings: ClientSettings) -> Dict[str, str]:
        headers = dict(settings.default_headers) if settings.default_headers else {}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        return headers

    def _models(self) -> AsyncOpenAI:
        if self._models_client is None:
            settings = self._settings
            self._models_client = AsyncOpenAI(
                api_key=settings.api_key or _PLACEHOLDER_API_KEY,
                base_url=settings.base_url,
                timeout=settings.models_timeout,
                max_retries=0,
                default_headers=dict(settings.default_headers) if settings.default_headers else None,
            )
        return self._models_client

    async def _fetch_models(self) -> List[str]:
        response = await self._models().models.list()
        return [item.id for item in response.data if getattr(item, "id", None)]

    def _build_chat_payload(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        max_tokens: int,
        stream: bool,
        stops: Sequence[str] | None = None,
    ) -> Dict[str, Any]:
        settings = self._settings
        payload: Dict[str, Any] = {
            "messages": list(messages),
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if settings.model:
            payload["model"] = settings.model
        if stops:
            payload["stop"] = list(stops)
        if settings.temperature >= 0:
            payload["temperature"] = settings.temperature
        if settings.top_p >= 0:
            payload["top_p"] = settings.top_p
        if settings.top_k >= 0:
            payload["top_k"] = settings.top_k
        return payload

    def _beat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.beat()

    async def _handle_transport_error(self, exc: BaseException) -> None:
        base_url = self._settings.base_url
        if self._on_transport_error is None or not is_localhost(base_url):
            return
        LOGGER.info("Local server at %s unreachable (%s); running auto-start hook", base_url, exc)
        try:
            await self._on_transport_error(base_url)
        except Exception:
            LOGGER.warning("Auto-start hook failed", exc_info=True)


def _never_cancelled() -> bool:
    return False


def _prefix_payload(prefix: PrefixMessages) -> list[dict[str, str]]:
    return [{"role": role, "content": content} for role, content in prefix]
