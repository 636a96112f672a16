"""Event payloads broadcast to conversation channels. All events are Pydantic models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_EVENT_NAME = "message.streamed"


class EventKind(str, Enum):
    """Which part of the UI an event updates: the message body or the conversation title."""

    PROGRESS = "progress"
    TITLE_PROGRESS = "title-progress"


class StreamEvent(BaseModel):
    """One broadcast unit of a relay run. Immutable once created.

    Progress events carry the delta since the previous flush; the terminal event
    (``is_complete=True``) carries the full assembled text, or an error description
    when ``is_error`` is set.
    """

    model_config = ConfigDict(frozen=True)

    channel: str = Field(description="Channel name, e.g. chat.42")
    kind: EventKind = EventKind.PROGRESS
    content: str = ""
    is_complete: bool = False
    is_error: bool = False

    @model_validator(mode="after")
    def _error_is_terminal(self) -> "StreamEvent":
        if self.is_error and not self.is_complete:
            raise ValueError("an error event must also be the terminal event")
        return self

    @property
    def is_title(self) -> bool:
        return self.kind is EventKind.TITLE_PROGRESS

    def payload(self) -> dict[str, Any]:
        """Wire payload as subscribers expect it."""
        return {
            "content": self.content,
            "isComplete": self.is_complete,
            "error": self.is_error,
            "isTitle": self.is_title,
        }

    @classmethod
    def progress(cls, channel: str, content: str, kind: EventKind = EventKind.PROGRESS) -> "StreamEvent":
        return cls(channel=channel, kind=kind, content=content)

    @classmethod
    def complete(cls, channel: str, content: str, kind: EventKind = EventKind.PROGRESS) -> "StreamEvent":
        return cls(channel=channel, kind=kind, content=content, is_complete=True)

    @classmethod
    def failure(cls, channel: str, description: str, kind: EventKind = EventKind.PROGRESS) -> "StreamEvent":
        return cls(channel=channel, kind=kind, content=description, is_complete=True, is_error=True)


class BusMessage(BaseModel):
    """Envelope published on a Redis channel: event name plus payload."""

    event: str = DEFAULT_EVENT_NAME
    data: dict[str, Any] = Field(default_factory=dict)
