"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from tabpilot.ai.client import ClientSettings, CompletionClient
from tabpilot.editor.document import DocumentSnapshot

from helpers import FakeCompletionServer, RecordingHeartbeat


@pytest.fixture
def server() -> FakeCompletionServer:
    return FakeCompletionServer()


@pytest.fixture
def client_settings() -> ClientSettings:
    return ClientSettings(base_url="http://localhost:8080/v1", model="local-model")


@pytest.fixture
def heartbeat() -> RecordingHeartbeat:
    return RecordingHeartbeat()


@pytest.fixture
def completion_client(
    server: FakeCompletionServer,
    client_settings: ClientSettings,
    heartbeat: RecordingHeartbeat,
) -> CompletionClient:
    return CompletionClient(client_settings, transport=server.transport, heartbeat=heartbeat)


@pytest.fixture
def snapshot() -> DocumentSnapshot:
    text = "\n".join(f"line {index}" for index in range(40))
    return DocumentSnapshot.capture("file:///tmp/demo.py", text, 20, 2, language_id="python")
