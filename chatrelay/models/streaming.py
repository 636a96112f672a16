"""Streaming contract for model responses.

A token source is one model completion seen as a pull-based, finite,
non-restartable sequence of text fragments (content deltas):

- OpenAI Chat Completions stream: ``choices[0].delta.content`` per chunk.
- Chunks without content (role-only or finish chunks) are skipped.
- The source may stall indefinitely between fragments and may raise at any
  point; the relay treats a raise as the end of the stream.

Consumers iterate with ``async for`` and must not restart a source.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol, TypedDict, runtime_checkable


class ChatTurn(TypedDict):
    role: str
    content: str


TokenSource = AsyncIterator[str]


@runtime_checkable
class StreamingProtocol(Protocol):
    """Protocol for providers that can open a token source for a chat."""

    def stream_chat(
        self,
        messages: list[ChatTurn],
        *,
        model: str | None = None,
        temperature: float = 0.7,
    ) -> TokenSource:
        """Return an async iterator of content deltas for one completion."""
        ...
