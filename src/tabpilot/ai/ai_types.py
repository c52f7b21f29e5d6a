"""Shared typing contracts for the completion core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


class CompletionEndReason(str, Enum):
    """Terminal outcome of a streamed completion."""

    MAX_LINES = "maxLines"
    STREAM_END = "streamEnd"
    ABORTED = "aborted"
    EXCEED_CONTEXT_SIZE = "exceedContextSize"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ContextOverflow:
    """Context-size rejection reported by the inference server."""

    context_size: int
    prompt_size: int

    def to_dict(self) -> dict[str, int]:
        return {"contextSize": self.context_size, "promptSize": self.prompt_size}


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Accumulated completion text plus the reason the stream ended."""

    text: str
    reason: CompletionEndReason
    overflow: ContextOverflow | None = None

    @property
    def ok(self) -> bool:
        return self.reason in (CompletionEndReason.MAX_LINES, CompletionEndReason.STREAM_END)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "reason": self.reason.value,
            "overflow": self.overflow.to_dict() if self.overflow else None,
        }


class HeartbeatProtocol(Protocol):
    """Receiver of liveness pings while a response is streaming."""

    def beat(self) -> None:
        """Signal that the inference server is in active use."""
        ...
