"""Checkpoint segments and prefix planning for server-side cache priming.

A chat message is a list of segments; every boundary between two segments
is a checkpoint. Before the real request, each growing prefix of the
checkpointed messages is sent once with ``max_tokens=1`` so a prefix-keyed
KV cache on the server holds it. The final segment of the last checkpointed
message is the live edit point and is never primed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

__all__ = [
    "CHECKPOINT_MARKER",
    "ChatMessage",
    "CheckpointState",
    "coerce_messages",
    "plan_checkpoints",
    "strip_checkpoints",
]

CHECKPOINT_MARKER = "<|CONTEXT_CHECKPOINT|>"

PrefixMessages = tuple[tuple[str, str], ...]


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """A chat message whose content is split at checkpoint boundaries."""

    role: str
    segments: tuple[str, ...] = ("",)

    def __post_init__(self) -> None:
        object.__setattr__(self, "segments", tuple(self.segments) or ("",))

    @classmethod
    def text(cls, role: str, content: str) -> "ChatMessage":
        return cls(role=role, segments=(content,))

    @classmethod
    def from_marked(cls, role: str, content: str, marker: str = CHECKPOINT_MARKER) -> "ChatMessage":
        """Split ``content`` on the in-band ``marker`` string."""

        if not marker:
            raise ValueError("marker must be a non-empty string")
        return cls(role=role, segments=tuple(content.split(marker)))

    @property
    def content(self) -> str:
        """Content with every checkpoint boundary removed."""
        return "".join(self.segments)

    @property
    def has_checkpoint(self) -> bool:
        return len(self.segments) > 1

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def coerce_messages(
    messages: Iterable[ChatMessage | Mapping[str, Any]],
    *,
    marker: str = CHECKPOINT_MARKER,
) -> list[ChatMessage]:
    """Accept :class:`ChatMessage` objects or ``{"role", "content"}`` mappings."""

    normalized: list[ChatMessage] = []
    for message in messages:
        if isinstance(message, ChatMessage):
            normalized.append(message)
            continue
        try:
            role = str(message["role"])
            content = str(message.get("content") or "")
        except (KeyError, TypeError, AttributeError) as exc:
            raise TypeError("Messages must be ChatMessage objects or role/content mappings") from exc
        normalized.append(ChatMessage.from_marked(role, content, marker))
    if not normalized:
        raise ValueError("At least one message is required")
    return normalized


def strip_checkpoints(messages: Sequence[ChatMessage]) -> list[dict[str, str]]:
    """Return wire payloads with all checkpoint boundaries removed."""

    return [message.to_payload() for message in messages]


def plan_checkpoints(messages: Sequence[ChatMessage]) -> list[PrefixMessages]:
    """Return the ordered prefixes that should be primed for ``messages``.

    Trailing messages without a checkpoint are per-request content and are
    dropped. The remaining messages are replayed one segment at a time; a
    message enters the prefix when its first segment is reached.
    """

    last = len(messages) - 1
    while last >= 0 and not messages[last].has_checkpoint:
        last -= 1
    if last < 0:
        return []

    prefixes: list[PrefixMessages] = []
    built: list[tuple[str, str]] = []
    for index in range(last + 1):
        message = messages[index]
        content = ""
        built.append((message.role, content))
        final_index = len(message.segments) - 1
        for part_index, part in enumerate(message.segments):
            content += part
            built[-1] = (message.role, content)
            if index == last and part_index == final_index:
                break
            prefixes.append(tuple(built))
    return prefixes


class CheckpointState:
    """The last prefix primed successfully on one logical connection."""

    def __init__(self) -> None:
        self._messages: PrefixMessages = ()
        self._lock = threading.Lock()

    @property
    def messages(self) -> PrefixMessages:
        with self._lock:
            return self._messages

    def covers(self, prefix: PrefixMessages) -> bool:
        """True when the server already holds ``prefix``.

        Every message before the last must match the remembered one exactly;
        the last may stop partway through the remembered message of the same
        role, since a shorter segment run of a primed message is itself primed.
        """

        with self._lock:
            remembered = self._messages
        if not prefix:
            return True
        if len(remembered) < len(prefix):
            return False
        last = len(prefix) - 1
        if any(remembered[i] != prefix[i] for i in range(last)):
            return False
        role, content = prefix[last]
        remembered_role, remembered_content = remembered[last]
        return role == remembered_role and remembered_content.startswith(content)

    def commit(self, prefix: PrefixMessages) -> None:
        with self._lock:
            self._messages = prefix

    def reset(self) -> None:
        with self._lock:
            self._messages = ()
