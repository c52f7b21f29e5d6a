"""Completion client, streaming consumer, and request orchestration."""

from .ai_types import CompletionEndReason, CompletionResult, ContextOverflow
from .cancellation import CancellationToken
from .client import ClientSettings, CompletionClient
from .engine import CompletionEngine, DocumentContext, PromptBundle

__all__ = [
    "CancellationToken",
    "ClientSettings",
    "CompletionClient",
    "CompletionEndReason",
    "CompletionEngine",
    "CompletionResult",
    "ContextOverflow",
    "DocumentContext",
    "PromptBundle",
]
